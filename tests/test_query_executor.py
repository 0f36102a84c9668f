from datetime import datetime

import pytest

from database import FileDB
from models import ParsedQuery, QueryIntent
from query_executor import SqlQueryExecutor


@pytest.fixture
async def executor(db):
    rows = [
        ("invoice_openai_jan.pdf", "completed", "invoice", "OpenAI", 120.0, "whatsapp", datetime(2024, 1, 15)),
        ("invoice_openai_feb.pdf", "completed", "invoice", "OpenAI", 80.0, "slack", datetime(2024, 2, 15)),
        ("receipt_aws.pdf", "failed", "receipt", "AWS", 300.5, "slack", datetime(2024, 2, 20)),
        ("scan.png", "pending", None, None, None, "whatsapp", datetime(2024, 3, 1)),
    ]
    async with db.session() as session:
        for name, status, doc_type, vendor, amount, source, created in rows:
            session.add(FileDB(tenant_id="tenant-1", file_name=name, mime_type="application/pdf",
                               size=1000, processing_status=status, document_type=doc_type,
                               vendor=vendor, total_amount=amount, source=source, created_at=created))
        session.add(FileDB(tenant_id="tenant-2", file_name="other.pdf", processing_status="failed",
                           total_amount=999.0, created_at=datetime(2024, 2, 1)))
        await session.commit()
    return SqlQueryExecutor(db)


def query(intent, entities=None, aggregation=None, sorting=None):
    return ParsedQuery(intent=intent, confidence=0.8, entities=entities or {},
                       aggregation=aggregation, sorting=sorting)


async def test_count_is_tenant_scoped(executor):
    result = await executor.execute(query(QueryIntent.COUNT), "tenant-1")

    assert result.data == 4
    assert result.total_count == 4
    assert result.confidence == 0.8
    assert result.error is None


async def test_count_with_status_filter(executor):
    result = await executor.execute(query(QueryIntent.COUNT, {"status": ["failed"]}), "tenant-1")
    assert result.data == 1


async def test_list_sorted_newest_first(executor):
    result = await executor.execute(query(QueryIntent.LIST, {"limit": 2}), "tenant-1")

    assert result.total_count == 4
    assert [f["fileName"] for f in result.data] == ["scan.png", "receipt_aws.pdf"]
    assert set(result.data[0]) == {
        "id", "fileName", "mimeType", "size", "status", "source", "documentType",
        "vendor", "totalAmount", "createdAt",
    }


async def test_list_custom_sort(executor):
    result = await executor.execute(
        query(QueryIntent.LIST, {"document_type": ["invoice"]}, sorting={"field": "total_amount", "direction": "asc"}),
        "tenant-1",
    )
    assert [f["totalAmount"] for f in result.data] == [80.0, 120.0]


async def test_search_by_vendor_and_term(executor):
    by_vendor = await executor.execute(query(QueryIntent.SEARCH, {"vendor": "openai"}), "tenant-1")
    by_term = await executor.execute(query(QueryIntent.SEARCH, {"search_term": "AWS"}), "tenant-1")

    assert by_vendor.total_count == 2
    assert [f["fileName"] for f in by_term.data] == ["receipt_aws.pdf"]


async def test_date_range_is_inclusive(executor):
    result = await executor.execute(
        query(QueryIntent.COUNT, {"date_range": {"start": "2024-02-01", "end": "2024-02-20"}}), "tenant-1"
    )
    assert result.data == 2


async def test_scalar_aggregate(executor):
    result = await executor.execute(
        query(QueryIntent.AGGREGATE, aggregation={"type": "sum", "field": "total_amount"}), "tenant-1"
    )
    assert result.data == {"type": "sum", "field": "total_amount", "value": 500.5}
    assert result.total_count == 4


async def test_grouped_aggregate(executor):
    result = await executor.execute(
        query(QueryIntent.AGGREGATE, {"document_type": ["invoice", "receipt"]},
              aggregation={"type": "sum", "field": "total_amount", "group_by": "vendor"}),
        "tenant-1",
    )
    assert result.data == [{"group": "AWS", "value": 300.5}, {"group": "OpenAI", "value": 200.0}]


async def test_status_breakdown(executor):
    result = await executor.execute(query(QueryIntent.STATUS), "tenant-1")

    assert result.data == [
        {"status": "completed", "count": 2},
        {"status": "failed", "count": 1},
        {"status": "pending", "count": 1},
    ]
    assert result.total_count == 4


async def test_conversational_intent_is_rejected(executor):
    with pytest.raises(ValueError):
        await executor.execute(query(QueryIntent.GREETING), "tenant-1")
