import uuid

from sqlalchemy import func, select

from ..models import AccessLog
from ..schemas import AccessLogQuery, check_access_log_query
from ..time_utils import utcnow
from .concurrency import run_with_retry


class AccessLogStore:
    """Append-only audit trail of QR verification attempts."""

    def __init__(self, session, clock=utcnow, id_factory=None):
        self.session = session
        self.clock = clock
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def append(self, *, location_id, validation_result, transaction_id=None, user_id=None,
               qr_data=None, scanned_by=None, timestamp=None) -> AccessLog:
        entry = AccessLog(
            id=self.id_factory(),
            transaction_id=transaction_id,
            user_id=user_id,
            location_id=location_id,
            qr_data=qr_data,
            validation_result=validation_result,
            scanned_by=scanned_by,
            timestamp=timestamp or self.clock(),
        )

        def _op():
            self.session.add(entry)
            self.session.commit()
            return entry

        return run_with_retry(self.session, _op)

    def _filtered(self, stmt, query: AccessLogQuery):
        if query.user_id:
            stmt = stmt.where(AccessLog.user_id == query.user_id)
        if query.location_id:
            stmt = stmt.where(AccessLog.location_id == query.location_id)
        if query.transaction_id:
            stmt = stmt.where(AccessLog.transaction_id == query.transaction_id)
        if query.validation_result:
            stmt = stmt.where(AccessLog.validation_result == query.validation_result)
        if query.date_from:
            stmt = stmt.where(AccessLog.timestamp >= query.date_from)
        if query.date_to:
            stmt = stmt.where(AccessLog.timestamp <= query.date_to)
        return stmt

    def find_with_filters(self, query: AccessLogQuery) -> tuple[list[AccessLog], int]:
        """Newest-first page of entries matching every given filter, plus the total match count."""
        check_access_log_query(query)
        count_stmt = self._filtered(select(func.count()).select_from(AccessLog), query)
        page_stmt = (
            self._filtered(select(AccessLog), query)
            .order_by(AccessLog.timestamp.desc(), AccessLog.id.desc())
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )

        def _op():
            total = self.session.scalar(count_stmt)
            rows = list(self.session.scalars(page_stmt))
            return rows, total

        return run_with_retry(self.session, _op)

    def count_by_result(self) -> dict[str, int]:
        stmt = select(AccessLog.validation_result, func.count()).group_by(AccessLog.validation_result)
        rows = run_with_retry(self.session, lambda: self.session.execute(stmt).all())
        return {result: count for result, count in rows}
