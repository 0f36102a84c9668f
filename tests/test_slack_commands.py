import pytest

from models import TenantContext
from slack_commands import (
    CommandType, find_tenant, format_context_badge, format_no_access, format_tenant_list,
    parse_command
)

ACME = TenantContext("t-acme", "Acme Corp", "acme")
GLOBEX = TenantContext("t-globex", "Globex", "globex")


@pytest.mark.parametrize("text, expected_type, identifier, query", [
    ("@acme show revenue", CommandType.SWITCH, "acme", "show revenue"),
    ("switch tenant Acme Corp", CommandType.SWITCH, "Acme Corp", None),
    ("use org globex", CommandType.SWITCH, "globex", None),
    ("@globex", CommandType.SWITCH, "globex", None),
    ("list tenants", CommandType.LIST, None, None),
    ("@?", CommandType.LIST, None, None),
    ("current tenant", CommandType.CURRENT, None, None),
    ("which org?", CommandType.CURRENT, None, None),
    ("@@", CommandType.CURRENT, None, None),
    ("help", CommandType.HELP, None, None),
    ("?", CommandType.HELP, None, None),
    ("How many invoices do I have?", CommandType.QUERY, None, "How many invoices do I have?"),
])
def test_parse_command(text, expected_type, identifier, query):
    command = parse_command(text)
    assert command.type is expected_type
    assert command.tenant_identifier == identifier
    assert command.query == query


def test_parse_command_empty_text_is_query():
    command = parse_command(None)
    assert command.type is CommandType.QUERY
    assert command.query == ""


def test_find_tenant_by_slug_then_name():
    assert find_tenant("ACME", [ACME, GLOBEX]) is ACME
    assert find_tenant("globex", [ACME, GLOBEX]) is GLOBEX
    assert find_tenant("acme corp", [ACME, GLOBEX]) is ACME
    assert find_tenant("bogus", [ACME, GLOBEX]) is None


def test_tenant_list_marks_current():
    text = format_tenant_list([ACME, GLOBEX], current=GLOBEX)
    assert "• *Acme Corp* (`@acme`)" in text
    assert "→ *Globex* (`@globex`) ✓ _current_" in text
    assert text.endswith("_Switch with_ `@slug` _or_ `switch tenant name`")


def test_tenant_list_single_tenant():
    assert format_tenant_list([ACME]).endswith("_This is your only available organization._")


def test_no_access_message():
    assert format_no_access("bogus") == (
        "❌ You don't have access to \"bogus\"\n"
        "_Use_ `list tenants` _to see available organizations._"
    )


def test_context_badge():
    assert format_context_badge(ACME) == "_[Acme Corp]_"
