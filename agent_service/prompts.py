"""Prompt templates sent to the LLM collaborator."""

import json
from typing import Any, Dict, List

# ============================================================================
# CLASSIFIER
# ============================================================================

CLASSIFIER_SYSTEM = """You are an intelligent prompt classifier that analyzes user input to determine the appropriate response strategy.

Classify prompts into exactly one of these categories:
1. GREETING - Simple greetings, hello, hi, etc.
2. SIMPLE_QUESTION - Questions or requests for guidance that need no database access
3. CRUD_OPERATION - A single database operation (create, read, update, delete, list) on one entity type
4. COMPLEX_WORKFLOW - Multi-step, conditional, bulk, cross-entity or sorted/limited requests
5. SAFETY_VIOLATION - Destructive or dangerous requests that must be rejected
6. UNKNOWN - Unclear or ambiguous requests

Respond with JSON only:
{
  "intent": "INTENT_TYPE",
  "confidence": 0.0-1.0,
  "entities": [{"type": "<field name, e.g. email or name>", "value": "<value>"}],
  "operation": "CREATE|READ|UPDATE|DELETE|LIST or null",
  "table": "<entity type or null>",
  "requiresMultiAgent": true|false,
  "reasoning": "Brief explanation of classification"
}

Set operation and table to null unless the intent is CRUD_OPERATION."""


def classifier_prompt(instruction: str, entity_types: List[str]) -> str:
    return f"""Analyze this user input and classify it.

User Input: "{instruction}"

Known entity types: {", ".join(entity_types) or "(none)"}

Guidelines:
- "how do I", "explain how", "what can you do" = SIMPLE_QUESTION (instructions, not execution)
- "how many", "list", "show me", "count", "what is <entity>'s <field>" = CRUD_OPERATION (LIST or READ)
- "create a user named X with email Y" = CRUD_OPERATION (CREATE)
- Conditions ("if there are more than 3 users..."), sequences ("create A, B then list them"),
  bulk updates ("for every user whose name contains Admin..."), cross-entity questions and
  superlatives ("first", "newest", "oldest", "top 5") = COMPLEX_WORKFLOW
- "drop tables", an unqualified "delete all" or "delete everything", "destroy database",
  "shutdown server" = SAFETY_VIOLATION; "delete all users with @test.com emails" = COMPLEX_WORKFLOW
- Entity hint types must be field names of the target entity type where possible.

Respond with classification JSON only."""


# ============================================================================
# FIELD EXTRACTION
# ============================================================================

EXTRACTOR_SYSTEM = """You extract structured field values for database records from natural language.
Only report values that are clearly stated in the input. Respond with a JSON object only."""


def extraction_prompt(entity_type: str, instruction: str, fields: List[str], known: Dict[str, Any]) -> str:
    return f"""Extract data for a {entity_type} record from this input: "{instruction}"

Available fields: {", ".join(fields)}
Already found: {json.dumps(known, default=str)}

Return JSON with any additional field values you can extract.
Only include fields that are clearly mentioned in the input.
Return an empty object {{}} if no additional data is found."""


# ============================================================================
# PLAN GENERATOR
# ============================================================================

PLANNER_SYSTEM = """You translate natural-language requests into a strict JSON execution plan over a generic
entity store. Each step performs exactly one of: create, read, update, delete, list.
You never invent operations, and you answer with the JSON plan only."""

PLAN_GRAMMAR = """Plan grammar:
{
  "summary": "one sentence describing the plan",
  "steps": [
    {
      "id": "unique step id, e.g. s1",
      "operation": "create|read|update|delete|list",
      "entityType": "entity type name",
      "description": "short human description (optional)",
      "data": {"field": "value"},                      // create/update payload (optional)
      "identifier": "identifier value",                // read/update/delete target (optional)
      "filter": {"field": "value"} or {"field": {"contains": "text"}},  // list only (optional)
      "sort": {"by": "field", "order": "asc|desc"},    // list only (optional)
      "limit": 1,                                      // list only, applied after sort (optional)
      "condition": {"type": "count_gt|count_gte|count_lt|count_lte|count_eq|exists|not_exists",
                    "fromStep": "earlier step id", "field": "count|items.length", "value": 3},
      "repeat": 2,                                     // run the step N times (optional)
      "fromStep": "earlier step id",                   // run once per item of that step's result (optional)
      "dataTemplate": {"field": "{{item.field}}"}      // per-item data, only with fromStep (optional)
    }
  ]
}

Filter operators: eq, ne, contains, startswith, endswith, gt, gte, lt, lte, in.
Template transforms (pipe syntax inside a placeholder): lower, upper, strip, local_part, domain,
replace_domain:<new-domain>. Example: "{{item.email | replace_domain:company.com}}".
Records always carry "_id" and "_creationTime" (creation time in epoch ms); sort by
"_creationTime" to find the first/oldest (asc) or newest/latest (desc) record.
A condition may only reference a step that appears earlier in the list."""

PLAN_EXAMPLES = """Example 1 (conditional branching):
Request: "If there are more than 3 users, delete the oldest one, otherwise create TempUser with temp@demo.com"
{
  "summary": "Check the user count and branch",
  "steps": [
    {"id": "s1", "operation": "list", "entityType": "users"},
    {"id": "s2", "operation": "list", "entityType": "users", "sort": {"by": "_creationTime", "order": "asc"}, "limit": 1,
     "condition": {"type": "count_gt", "fromStep": "s1", "value": 3}},
    {"id": "s3", "operation": "delete", "entityType": "users", "fromStep": "s2",
     "condition": {"type": "count_gt", "fromStep": "s1", "value": 3}},
    {"id": "s4", "operation": "create", "entityType": "users", "data": {"name": "TempUser", "email": "temp@demo.com"},
     "condition": {"type": "count_lte", "fromStep": "s1", "value": 3}}
  ]
}

Example 2 (cross-entity correlation and per-item updates):
Request: "For every user whose name contains Admin, move their email to the company.com domain, then list the orders of those users"
{
  "summary": "Normalize admin emails and show their orders",
  "steps": [
    {"id": "s1", "operation": "list", "entityType": "users", "filter": {"name": {"contains": "Admin"}}},
    {"id": "s2", "operation": "update", "entityType": "users", "fromStep": "s1",
     "identifier": "{{item.email}}",
     "dataTemplate": {"email": "{{item.email | replace_domain:company.com}}"}},
    {"id": "s3", "operation": "list", "entityType": "orders", "filter": {"userEmail": {"endswith": "@company.com"}},
     "condition": {"type": "exists", "fromStep": "s1"}}
  ]
}"""


def planner_prompt(instruction: str, schema_description: str, entity_types: List[str]) -> str:
    return f"""Create an execution plan for this request:

"{instruction}"

Known entity types: {", ".join(entity_types) or "(none)"}

Entity schemas:
{schema_description or "(no entity types registered)"}

{PLAN_GRAMMAR}

{PLAN_EXAMPLES}

Use the entity type the request names even if it is not in the known list.
Return the JSON plan only."""


# ============================================================================
# DIRECT RESPONDER
# ============================================================================

RESPONDER_SYSTEM = """You are a helpful assistant in front of a database-backed workflow service.
You can explain what the service does: create, read, update, delete and list records of the
available entity types, and run multi-step or conditional workflows over them.
Be natural, concise and accurate about the current data. Never claim to have executed an
operation. If a request is unsafe or destructive, explain why it will not be performed and
offer a safe alternative."""


def responder_prompt(instruction: str, context_type: str, classification: Dict[str, Any],
                     store_context: Dict[str, Any]) -> str:
    return f"""User said: "{instruction}"

Context Information:
- Interaction type: {context_type}
- Classification confidence: {classification.get("confidence")}
- Available entities: {json.dumps(store_context.get("availableEntities", []))}
- Record counts per entity: {json.dumps(store_context.get("entityCounts", {}))}
- Available operations: {json.dumps(store_context.get("availableOperations", []))}

Classification details: {json.dumps(classification, default=str)}

Respond with JSON:
{{
  "message": "Your natural, context-aware response to the user",
  "understanding": "What you understood about their request",
  "reasoning": "Why you chose to respond this way"
}}"""


def responder_plain_prompt(instruction: str, context_type: str, store_context: Dict[str, Any]) -> str:
    return f"""User said: "{instruction}"
Context: {context_type}
Available entities: {", ".join(store_context.get("availableEntities", [])) or "(none)"}
Total records: {store_context.get("totalEntities", 0)}

Generate a brief, helpful response that addresses their input naturally.
Respond with just the message text, no JSON."""
