"""
Chat-native tenant switching commands for Slack

Grammar (case-insensitive, first match wins):
  @slug <query>                                   switch and run query
  switch|change|use tenant|org|organization <x>   switch by name or slug
  @slug                                           switch
  list tenants|orgs|organizations  /  @?          list tenants
  current|which|what tenant|org|organization / @@ show active tenant
  help|commands|?                                 command help
  anything else                                   query in active tenant
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from models import TenantContext

class CommandType(str, Enum):
    SWITCH = "switch"
    LIST = "list"
    CURRENT = "current"
    HELP = "help"
    QUERY = "query"

@dataclass
class SlackCommand:
    type: CommandType
    tenant_identifier: Optional[str] = None
    query: Optional[str] = None

SWITCH_INLINE = re.compile(r"^@(\w[\w-]*)\s+(.+)$", re.IGNORECASE | re.DOTALL)
SWITCH_LONG = re.compile(r"^(?:switch|change|use)\s+(?:tenant|org|organization)\s+(.+)$", re.IGNORECASE)
SWITCH_SHORT = re.compile(r"^@(\w[\w-]*)$", re.IGNORECASE)
LIST_LONG = re.compile(r"^(?:list|show)\s+(?:tenants|orgs|organizations)$", re.IGNORECASE)
LIST_SHORT = re.compile(r"^@\?$")
CURRENT_LONG = re.compile(r"^(?:current|which|what)\s+(?:tenant|org|organization)\??$", re.IGNORECASE)
CURRENT_SHORT = re.compile(r"^@@$")
HELP = re.compile(r"^(?:help|commands|\?)$", re.IGNORECASE)

def parse_command(text: Optional[str]) -> SlackCommand:
    """Parse one message into a tenant command or a query"""
    trimmed = (text or "").strip()

    match = SWITCH_INLINE.match(trimmed)
    if match:
        return SlackCommand(CommandType.SWITCH, tenant_identifier=match.group(1),
                            query=match.group(2).strip())

    match = SWITCH_LONG.match(trimmed)
    if match:
        return SlackCommand(CommandType.SWITCH, tenant_identifier=match.group(1).strip())

    match = SWITCH_SHORT.match(trimmed)
    if match:
        return SlackCommand(CommandType.SWITCH, tenant_identifier=match.group(1))

    if LIST_LONG.match(trimmed) or LIST_SHORT.match(trimmed):
        return SlackCommand(CommandType.LIST)

    if CURRENT_LONG.match(trimmed) or CURRENT_SHORT.match(trimmed):
        return SlackCommand(CommandType.CURRENT)

    if HELP.match(trimmed):
        return SlackCommand(CommandType.HELP)

    return SlackCommand(CommandType.QUERY, query=trimmed)

def find_tenant(identifier: str, tenants: List[TenantContext]) -> Optional[TenantContext]:
    """Match by slug first, then by case-insensitive name"""
    needle = identifier.strip().lower()
    for tenant in tenants:
        if tenant.tenant_slug.lower() == needle:
            return tenant
    for tenant in tenants:
        if tenant.tenant_name.lower() == needle:
            return tenant
    return None

# === Message templates ===

HELP_TEXT = "\n".join([
    "*Organization commands:*",
    "• `@slug <question>` ask a question in a specific organization",
    "• `@slug` or `switch tenant <name>` switch organization",
    "• `list tenants` or `@?` show your organizations",
    "• `current tenant` or `@@` show the active organization",
    "• `help` show this message",
    "",
    "Anything else is treated as a question about your files, for example _How many invoices do I have?_",
])

def format_tenant_list(tenants: List[TenantContext], current: Optional[TenantContext] = None) -> str:
    lines = ["*Your Organizations:*"]
    for tenant in tenants:
        is_current = current is not None and tenant.tenant_id == current.tenant_id
        marker = "→" if is_current else "•"
        line = f"{marker} *{tenant.tenant_name}* (`@{tenant.tenant_slug}`)"
        if is_current:
            line += " ✓ _current_"
        lines.append(line)

    lines.append("")
    if len(tenants) == 1:
        lines.append("_This is your only available organization._")
    else:
        lines.append("_Switch with_ `@slug` _or_ `switch tenant name`")
    return "\n".join(lines)

def format_switch_confirmation(tenant: TenantContext) -> str:
    return (
        f"✓ Switched to *{tenant.tenant_name}*\n"
        f"Your questions in this conversation will now use this organization."
    )

def format_no_access(identifier: str) -> str:
    return (
        f"❌ You don't have access to \"{identifier}\"\n"
        f"_Use_ `list tenants` _to see available organizations._"
    )

def format_current_tenant(tenant: Optional[TenantContext]) -> str:
    if tenant is None:
        return "No organization selected. Use `list tenants` to see your organizations."
    return f"You're currently working in *{tenant.tenant_name}* (`@{tenant.tenant_slug}`)"

def format_selection_required(tenants: List[TenantContext]) -> str:
    return "Please select an organization first:\n\n" + format_tenant_list(tenants)

def format_context_badge(tenant: TenantContext) -> str:
    """Prefix for replies in DMs, where the active tenant is not otherwise visible"""
    return f"_[{tenant.tenant_name}]_"
