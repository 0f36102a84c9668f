"""
Executes parsed queries against the tenant-scoped files table
"""

import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError

from database import DatabaseManager, FileDB
from models import ParsedQuery, QueryIntent, QueryResult
from monitoring import logger

DEFAULT_LIST_LIMIT = 20

AGGREGATE_FIELDS = {
    "total_amount": FileDB.total_amount,
    "size": FileDB.size,
}

GROUP_BY_FIELDS = {
    "status": FileDB.processing_status,
    "source": FileDB.source,
    "document_type": FileDB.document_type,
    "vendor": FileDB.vendor,
}

SORT_FIELDS = {
    "created_at": FileDB.created_at,
    "total_amount": FileDB.total_amount,
    "file_name": FileDB.file_name,
    "size": FileDB.size,
}

AGGREGATE_FUNCTIONS = {
    "sum": func.sum,
    "avg": func.avg,
    "min": func.min,
    "max": func.max,
}

def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))

def build_conditions(entities: Dict[str, Any], tenant_id: str) -> List[Any]:
    """WHERE clauses for the extracted entities; always tenant scoped"""
    conditions = [FileDB.tenant_id == tenant_id]

    if entities.get("status"):
        conditions.append(FileDB.processing_status.in_(entities["status"]))
    if entities.get("source"):
        conditions.append(FileDB.source.in_(entities["source"]))
    if entities.get("document_type"):
        conditions.append(FileDB.document_type.in_(entities["document_type"]))
    if entities.get("vendor"):
        conditions.append(func.lower(FileDB.vendor).contains(entities["vendor"].lower()))
    if entities.get("search_term"):
        conditions.append(func.lower(FileDB.file_name).contains(entities["search_term"].lower()))

    date_range = entities.get("date_range") or {}
    if date_range.get("start"):
        start = datetime.combine(_as_date(date_range["start"]), datetime.min.time())
        conditions.append(FileDB.created_at >= start)
    if date_range.get("end"):
        end = datetime.combine(_as_date(date_range["end"]) + timedelta(days=1), datetime.min.time())
        conditions.append(FileDB.created_at < end)

    return conditions

def serialize_file(row: FileDB) -> Dict[str, Any]:
    return {
        "id": row.id,
        "fileName": row.file_name,
        "mimeType": row.mime_type,
        "size": row.size,
        "status": row.processing_status,
        "source": row.source,
        "documentType": row.document_type,
        "vendor": row.vendor,
        "totalAmount": row.total_amount,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }

class SqlQueryExecutor:
    """Runs count / list / search / aggregate / status queries"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def execute(self, parsed_query: ParsedQuery, tenant_id: str) -> QueryResult:
        intent = parsed_query.intent
        if intent not in (QueryIntent.COUNT, QueryIntent.LIST, QueryIntent.SEARCH,
                          QueryIntent.AGGREGATE, QueryIntent.STATUS):
            raise ValueError(f"Query intent '{intent.value}' cannot be executed")

        start = time.perf_counter()
        conditions = build_conditions(parsed_query.entities, tenant_id)

        try:
            if intent is QueryIntent.COUNT:
                data = await self._count(conditions)
                total = data
            elif intent in (QueryIntent.LIST, QueryIntent.SEARCH):
                data, total = await self._list(conditions, parsed_query)
            elif intent is QueryIntent.AGGREGATE:
                data, total = await self._aggregate(conditions, parsed_query.aggregation or {})
            else:
                data, total = await self._status_breakdown(conditions)
        except SQLAlchemyError as e:
            logger.error("query_execution_failed", tenant_id=tenant_id, intent=intent.value, error=str(e))
            return QueryResult(
                data=None,
                confidence=parsed_query.confidence,
                execution_time_ms=int((time.perf_counter() - start) * 1000),
                error=f"Database error: {e}",
            )

        execution_time_ms = int((time.perf_counter() - start) * 1000)
        logger.info("query_executed", tenant_id=tenant_id, intent=intent.value,
                    total_count=total, execution_time_ms=execution_time_ms)
        return QueryResult(
            data=data,
            confidence=parsed_query.confidence,
            total_count=total,
            execution_time_ms=execution_time_ms,
        )

    async def _count(self, conditions: List[Any]) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(func.count(FileDB.id)).where(*conditions)
            )
            return result.scalar_one()

    async def _list(self, conditions: List[Any], parsed_query: ParsedQuery) -> Tuple[List[Dict[str, Any]], int]:
        limit = parsed_query.entities.get("limit") or DEFAULT_LIST_LIMIT
        sorting = parsed_query.sorting or {}
        sort_column = SORT_FIELDS.get(sorting.get("field"), FileDB.created_at)
        order = sort_column.asc() if sorting.get("direction") == "asc" else sort_column.desc()

        async with self.db.session() as session:
            total = (await session.execute(
                select(func.count(FileDB.id)).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(
                select(FileDB).where(*conditions).order_by(order).limit(limit)
            )).scalars().all()

        return [serialize_file(row) for row in rows], total

    async def _aggregate(self, conditions: List[Any], aggregation: Dict[str, Any]) -> Tuple[Any, int]:
        agg_type = aggregation.get("type", "count")
        field_name = aggregation.get("field") or "total_amount"
        column = AGGREGATE_FIELDS.get(field_name, FileDB.total_amount)

        if agg_type == "count":
            measure = func.count(FileDB.id)
        else:
            measure = AGGREGATE_FUNCTIONS[agg_type](column)

        group_column = GROUP_BY_FIELDS.get(aggregation.get("group_by"))

        async with self.db.session() as session:
            if group_column is not None:
                result = await session.execute(
                    select(group_column, measure).where(*conditions)
                    .group_by(group_column).order_by(group_column)
                )
                groups = [
                    {"group": group if group is not None else "unknown", "value": _number(value)}
                    for group, value in result.all()
                ]
                return groups, len(groups)

            value = (await session.execute(select(measure).where(*conditions))).scalar_one()
            matched = (await session.execute(
                select(func.count(FileDB.id)).where(*conditions)
            )).scalar_one()

        return {"type": agg_type, "field": field_name, "value": _number(value)}, matched

    async def _status_breakdown(self, conditions: List[Any]) -> Tuple[List[Dict[str, Any]], int]:
        async with self.db.session() as session:
            result = await session.execute(
                select(FileDB.processing_status, func.count(FileDB.id))
                .where(*conditions)
                .group_by(FileDB.processing_status)
                .order_by(FileDB.processing_status)
            )
            breakdown = [{"status": status or "unknown", "count": count} for status, count in result.all()]
        return breakdown, sum(item["count"] for item in breakdown)

def _number(value: Any) -> Any:
    if value is None:
        return 0
    if isinstance(value, (float, Decimal)):
        return round(float(value), 2)
    return value
