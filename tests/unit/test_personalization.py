"""Tests for {{token}} personalization."""

from crm_automation.actions.personalization import render

RECORD = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "company": {"name": "Analytical Engines"},
    "lead_score": 80.0,
    "custom_fields": {"plan": "Pro"},
}


def test_simple_and_nested_tokens():
    assert render("Hi {{first_name}} from {{ company.name }}", RECORD) == "Hi Ada from Analytical Engines"


def test_full_name_is_composed():
    assert render("{{full_name}}", RECORD) == "Ada Lovelace"


def test_custom_field_token():
    assert render("Your plan: {{custom:plan}}", RECORD) == "Your plan: Pro"


def test_whole_floats_render_as_integers():
    assert render("Score {{lead_score}}", RECORD) == "Score 80"


def test_fallbacks_for_missing_values():
    assert render("Hi {{first_name}} at {{company_name}}", {}) == "Hi there at your company"
    assert render("Dear {{full_name}}", {}) == "Dear Valued Customer"
    assert render("[{{nickname}}]", {}) == "[]"


def test_fallbacks_can_be_disabled():
    assert render("Hi {{nickname}}", {}, use_fallbacks=False) == "Hi {{nickname}}"


def test_extra_values_take_precedence():
    assert render("{{workflow_name}}: {{first_name}}", RECORD, {"workflow_name": "Onboarding"}) == "Onboarding: Ada"


def test_empty_template():
    assert render(None, RECORD) == ""
    assert render("", RECORD) == ""
