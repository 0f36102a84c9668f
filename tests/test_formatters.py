import pytest

from errors import ErrorCode, NLQError
from formatters import (
    LOW_CONFIDENCE_NOTE, MAX_QUICK_REPLIES, SlackFormatter, WhatsAppFormatter, format_aggregate,
    format_count, format_status_summary, formatter_for
)
from models import ParsedQuery, Platform, QueryIntent, QueryResult, ResponseAction
from responses import GREETING_TEXT, UnifiedResponseGenerator

generator = UnifiedResponseGenerator()


def data_response(intent=QueryIntent.COUNT, data=3, total=None, confidence=0.9,
                  platform=Platform.WHATSAPP):
    parsed = ParsedQuery(intent=intent, confidence=confidence)
    result = QueryResult(data=data, confidence=confidence,
                         total_count=total if total is not None else data if isinstance(data, int) else None)
    return generator.generate("question", parsed, result, platform)


def files(n):
    return [
        {"id": f"f{i}", "fileName": f"invoice_{i}.pdf", "status": "completed",
         "size": 2048, "createdAt": "2024-05-01T10:00:00"}
        for i in range(1, n + 1)
    ]


class TestWhatsAppFormatter:
    def test_response_text_is_verbatim(self):
        response = data_response()
        response.metadata.response_text = "You have three files."

        formatted = WhatsAppFormatter().format(response)

        assert formatted.text == "You have three files."

    def test_count_with_numbered_trailers(self):
        formatted = WhatsAppFormatter().format(data_response())

        assert formatted.text == (
            "You have *3* files in total.\n\n"
            "💡 *You can also ask:*\n"
            "1. Show me the list of these files\n"
            "2. Which files failed processing?\n\n"
            "*Actions:*\n"
            "3. Show list\n"
            "4. Help"
        )
        assert formatted.quick_replies == [
            "Show me the list of these files", "Which files failed processing?", "Show list", "Help"
        ]

    def test_list_is_capped_at_ten(self):
        formatted = WhatsAppFormatter().format(
            data_response(QueryIntent.LIST, data=files(12), total=25)
        )

        assert formatted.text.startswith("Here are your 25 files (showing the first 10 of 25):")
        assert "10. ✅ *invoice_10.pdf*" in formatted.text
        assert "invoice_11.pdf" not in formatted.text
        assert "\n\n... and 15 more" in formatted.text

    def test_empty_list(self):
        formatted = WhatsAppFormatter().format(data_response(QueryIntent.LIST, data=[], total=0))
        assert formatted.text.startswith("I couldn't find any files matching your search criteria.")

    @pytest.mark.parametrize("confidence, expect_note", [(0.5, True), (0.69, True), (0.7, False), (0.9, False)])
    def test_low_confidence_note(self, confidence, expect_note):
        formatted = WhatsAppFormatter().format(data_response(confidence=confidence))
        assert (LOW_CONFIDENCE_NOTE in formatted.text) is expect_note

    def test_conversational_reply_is_undecorated(self):
        parsed = ParsedQuery(intent=QueryIntent.GREETING, confidence=0.4)

        formatted = WhatsAppFormatter().format(generator.conversational("hi", parsed))

        assert formatted.text == GREETING_TEXT
        assert formatted.quick_replies == []

    def test_error_reply_is_undecorated(self):
        response = generator.error("???", NLQError(ErrorCode.PARSING_FAILED))

        formatted = WhatsAppFormatter().format(response)

        assert formatted.text == response.metadata.response_text
        assert "You can also ask" not in formatted.text
        assert LOW_CONFIDENCE_NOTE not in formatted.text
        assert formatted.quick_replies == []

    def test_quick_replies_capped(self):
        response = data_response(QueryIntent.LIST, data=files(3), total=30)
        response.actions.append(ResponseAction("Extra", "extra"))

        formatted = WhatsAppFormatter().format(response)

        assert len(response.suggestions) + len(response.actions) > MAX_QUICK_REPLIES
        assert len(formatted.quick_replies) == MAX_QUICK_REPLIES
        assert formatted.quick_replies[:3] == response.suggestions[:3]


class TestSlackFormatter:
    def test_blocks_with_quick_action_buttons(self):
        formatted = SlackFormatter().format(data_response(platform=Platform.SLACK))

        assert formatted.text == "You have *3* files in total."
        section, divider, heading, actions = formatted.blocks
        assert section == {"type": "section", "text": {"type": "mrkdwn", "text": formatted.text}}
        assert divider == {"type": "divider"}
        assert heading["text"]["text"] == "*Quick actions:*"
        assert [b["action_id"] for b in actions["elements"]] == ["suggestion_0", "suggestion_1", "suggestion_2"]
        assert actions["elements"][2]["value"] == "Show list"

    def test_low_confidence_note(self):
        formatted = SlackFormatter().format(data_response(confidence=0.5, platform=Platform.SLACK))
        assert formatted.text.endswith(LOW_CONFIDENCE_NOTE)

    def test_conversational_reply_has_single_section(self):
        parsed = ParsedQuery(intent=QueryIntent.GREETING, confidence=1.0)

        formatted = SlackFormatter().format(generator.conversational("hi", parsed))

        assert formatted.text == GREETING_TEXT
        assert len(formatted.blocks) == 1


class TestTemplates:
    def test_count_with_filters(self):
        assert format_count(1, ["status: failed"]) == "You have *1* file matching your criteria (status: failed)."

    def test_grouped_aggregate(self):
        text = format_aggregate([{"group": "OpenAI", "value": 120.5}, {"group": "AWS", "value": 3000}])
        assert text == "📊 *Aggregation Results*\n\n• OpenAI: *120.50*\n• AWS: *3,000*"

    def test_scalar_aggregate(self):
        text = format_aggregate({"type": "sum", "field": "total_amount", "value": 1234.5})
        assert text == "📊 *Calculation Result*\n\nThe total is: *1,234.50*"

    def test_status_summary(self):
        text = format_status_summary([{"status": "completed", "count": 4}, {"status": "failed", "count": 1}])
        assert text == (
            "Here's a breakdown of your files:\n\n"
            "✅ Completed: 4\n"
            "❌ Failed: 1\n\n"
            "Total: 5 files"
        )

    def test_status_summary_empty(self):
        assert format_status_summary([]) == "You don't have any files in the system yet."


def test_formatter_for():
    assert isinstance(formatter_for(Platform.WHATSAPP), WhatsAppFormatter)
    assert isinstance(formatter_for(Platform.SLACK), SlackFormatter)
