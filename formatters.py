"""
Platform formatters: UnifiedResponse -> WhatsApp text or Slack mrkdwn + Block Kit

metadata.response_text always wins verbatim. Suggestion/action trailers and the
low-confidence note only ever decorate successful data responses.
"""

from typing import Any, Dict, List, Optional

from models import FormattedMessage, Platform, UnifiedResponse

MAX_LIST_ITEMS = 10
MAX_SUGGESTIONS = 3
MAX_QUICK_REPLIES = 5
LOW_CONFIDENCE_THRESHOLD = 0.7
SLACK_SECTION_LIMIT = 3000
SLACK_BUTTON_LABEL_LIMIT = 75

LOW_CONFIDENCE_NOTE = (
    "_Note: I'm not entirely sure I understood your query correctly. "
    "Try rephrasing if the results don't match your expectations._"
)

STATUS_EMOJI = {
    "pending": "⏳",
    "processing": "🔄",
    "completed": "✅",
    "failed": "❌",
}

AGGREGATE_LABELS = {
    "sum": "total",
    "avg": "average",
    "min": "minimum",
    "max": "maximum",
    "count": "count",
}

# === Shared templates ===

def format_number(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, int):
        return f"{value:,}"
    return str(value)

def format_size(size: Optional[int]) -> str:
    if not size:
        return "unknown size"
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"

def format_count(count: int, filters: List[str]) -> str:
    noun = "file" if count == 1 else "files"
    if filters:
        return f"You have *{format_number(count)}* {noun} matching your criteria ({'; '.join(filters)})."
    return f"You have *{format_number(count)}* {noun} in total."

def format_file_item(index: int, item: Dict[str, Any]) -> str:
    emoji = STATUS_EMOJI.get(item.get("status"), "📄")
    line = f"{index}. {emoji} *{item.get('fileName') or 'Untitled'}*"
    details = []
    if item.get("createdAt"):
        details.append(f"📅 {item['createdAt'][:10]}")
    details.append(f"📦 {format_size(item.get('size'))}")
    line += "\n   " + " | ".join(details)
    if item.get("vendor") or item.get("totalAmount") is not None:
        doc = (item.get("documentType") or "document").capitalize()
        extra = f"🧾 {doc}"
        if item.get("vendor"):
            extra += f" from {item['vendor']}"
        if item.get("totalAmount") is not None:
            extra += f" ({format_number(item['totalAmount'])})"
        line += "\n   " + extra
    return line

def format_list(items: List[Dict[str, Any]], total: Optional[int]) -> str:
    if not items:
        return ("I couldn't find any files matching your search criteria. "
                "Try adjusting your filters or search terms.")

    total = max(total or 0, len(items))
    shown = items[:MAX_LIST_ITEMS]
    noun = "file" if total == 1 else "files"
    header = f"Here are your {total} {noun}"
    if total > len(shown):
        header += f" (showing the first {len(shown)} of {total})"
    lines = [header + ":", ""]
    lines.extend(format_file_item(i, item) for i, item in enumerate(shown, start=1))

    text = "\n".join(lines)
    remaining = total - len(shown)
    if remaining > 0:
        text += f"\n\n... and {remaining} more"
    return text

def format_aggregate(data: Any) -> str:
    if isinstance(data, list):
        if not data:
            return "I couldn't find any files to calculate over."
        lines = ["📊 *Aggregation Results*", ""]
        lines.extend(f"• {row.get('group')}: *{format_number(row.get('value'))}*" for row in data)
        return "\n".join(lines)

    if isinstance(data, dict):
        label = AGGREGATE_LABELS.get(data.get("type"), "result")
        return f"📊 *Calculation Result*\n\nThe {label} is: *{format_number(data.get('value'))}*"

    return f"📊 *Calculation Result*\n\nThe result is: *{format_number(data)}*"

def format_status_summary(data: Any) -> str:
    if not isinstance(data, list):
        return str(data) if data is not None else "You don't have any files in the system yet."
    if not data:
        return "You don't have any files in the system yet."

    lines = ["Here's a breakdown of your files:", ""]
    total = 0
    for row in data:
        status = row.get("status") or "unknown"
        count = row.get("count", 0)
        total += count
        lines.append(f"{STATUS_EMOJI.get(status, '📄')} {status.capitalize()}: {format_number(count)}")
    lines.append("")
    lines.append(f"Total: {format_number(total)} files")
    return "\n".join(lines)

def render_results(response: UnifiedResponse) -> str:
    """Per-type template text for a response without response_text"""
    result_type = response.results.type
    data = response.results.data
    if result_type == "count":
        return format_count(data or 0, response.metadata.filters_applied)
    if result_type == "list":
        return format_list(data or [], response.metadata.total_count)
    if result_type == "aggregate":
        return format_aggregate(data)
    return format_status_summary(data)

def is_data_response(response: UnifiedResponse) -> bool:
    """Successful file-query response (not conversational, not an error)"""
    return not response.is_error and not response.is_conversational

def quick_replies_for(response: UnifiedResponse) -> List[str]:
    if not is_data_response(response):
        return []
    replies = response.suggestions[:MAX_SUGGESTIONS] + [action.label for action in response.actions]
    return replies[:MAX_QUICK_REPLIES]

def is_low_confidence(response: UnifiedResponse) -> bool:
    return is_data_response(response) and response.metadata.confidence < LOW_CONFIDENCE_THRESHOLD

# === WhatsApp ===

class WhatsAppFormatter:
    """Plain text with emoji; quick replies are numbered in the text"""
    platform = Platform.WHATSAPP

    def format(self, response: UnifiedResponse) -> FormattedMessage:
        quick_replies = quick_replies_for(response)
        if response.metadata.response_text is not None:
            return FormattedMessage(text=response.metadata.response_text, quick_replies=quick_replies)

        text = render_results(response)

        if is_data_response(response):
            suggestions = response.suggestions[:MAX_SUGGESTIONS]
            number = 1
            if suggestions:
                text += "\n\n💡 *You can also ask:*"
                for suggestion in suggestions:
                    text += f"\n{number}. {suggestion}"
                    number += 1
            if response.actions:
                text += "\n\n*Actions:*"
                for action in response.actions:
                    text += f"\n{number}. {action.label}"
                    number += 1

        if is_low_confidence(response):
            text += "\n\n" + LOW_CONFIDENCE_NOTE

        return FormattedMessage(text=text, quick_replies=quick_replies)

# === Slack ===

def build_quick_action_blocks(labels: List[str]) -> List[Dict[str, Any]]:
    """Divider, heading and one button per quick reply"""
    if not labels:
        return []
    return [
        {"type": "divider"},
        {"type": "section", "text": {"type": "mrkdwn", "text": "*Quick actions:*"}},
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": label[:SLACK_BUTTON_LABEL_LIMIT]},
                    "action_id": f"suggestion_{i}",
                    "value": label,
                }
                for i, label in enumerate(labels[:MAX_QUICK_REPLIES])
            ],
        },
    ]

class SlackFormatter:
    """mrkdwn text plus Block Kit; quick replies become buttons"""
    platform = Platform.SLACK

    def format(self, response: UnifiedResponse) -> FormattedMessage:
        quick_replies = quick_replies_for(response)
        if response.metadata.response_text is not None:
            text = response.metadata.response_text
        else:
            text = render_results(response)
            if is_low_confidence(response):
                text += "\n\n" + LOW_CONFIDENCE_NOTE

        blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": text[:SLACK_SECTION_LIMIT]}}]
        blocks.extend(build_quick_action_blocks(quick_replies))
        return FormattedMessage(text=text, quick_replies=quick_replies, blocks=blocks)

def formatter_for(platform: Platform):
    if platform is Platform.WHATSAPP:
        return WhatsAppFormatter()
    elif platform is Platform.SLACK:
        return SlackFormatter()
    raise ValueError(f"Unsupported platform: {platform}")
