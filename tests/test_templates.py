import pytest

from agent_service.templates import TemplateError, render_template, render_value

ITEM = {"name": "Ada Lovelace", "email": "Ada@Old.org", "age": 36, "meta": {"team": "core"}}


def test_whole_placeholder_keeps_type():
    assert render_value("{{item.age}}", ITEM) == 36
    assert render_value("{{ item.meta.team }}", ITEM) == "core"


def test_embedded_placeholders_are_substituted():
    assert render_value("Hello {{item.name}} ({{item.age}})", ITEM) == "Hello Ada Lovelace (36)"
    assert render_value("{{item.name}} <{{item.email}}>", ITEM) == "Ada Lovelace <Ada@Old.org>"


def test_transform_pipeline():
    assert render_value("{{item.email | lower}}", ITEM) == "ada@old.org"
    assert render_value("{{item.email | local_part | upper}}", ITEM) == "ADA"
    assert render_value("{{item.email | domain}}", ITEM) == "Old.org"
    assert render_value("{{item.email | replace_domain:company.com}}", ITEM) == "Ada@company.com"
    assert render_value("{{item.email | replace_domain:@company.com | lower}}", ITEM) == "ada@company.com"


def test_render_template_nested_values():
    out = render_template(
        {"email": "{{item.email | lower}}", "tags": ["{{item.meta.team}}", "static"], "n": 1},
        ITEM,
    )
    assert out == {"email": "ada@old.org", "tags": ["core", "static"], "n": 1}


@pytest.mark.parametrize("template", [
    "{{item.missing}}",
    "{{record.email}}",
    "{{item.email | shout}}",
    "{{item.name | domain}}",
    "{{item.email | replace_domain}}",
])
def test_bad_templates_raise(template):
    with pytest.raises(TemplateError):
        render_value(template, ITEM)
