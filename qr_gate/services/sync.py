import logging
from dataclasses import dataclass

from ..errors import DuplicateId, NotFound
from ..models import STATUS_PENDING_SYNC, Transaction
from ..schemas import SyncTransactionDto

log = logging.getLogger(__name__)


@dataclass
class SyncResult:
    accepted: bool
    transaction: Transaction


class TransactionSync:
    """Persists transactions that a client created while offline.

    Resubmitting the same transaction id is safe: the stored record is
    returned with accepted=False and nothing is written.
    """

    def __init__(self, transactions, profiles):
        self.transactions = transactions
        self.profiles = profiles

    def sync(self, dto: SyncTransactionDto) -> SyncResult:
        if not self.profiles.exists(dto.user_id):
            raise NotFound(f'user {dto.user_id} not found')
        try:
            txn = self.transactions.create(dto.to_create_dto(), status=STATUS_PENDING_SYNC)
        except DuplicateId:
            log.info('transaction %s already synced', dto.transaction_id)
            return SyncResult(accepted=False, transaction=self.transactions.get(dto.transaction_id))
        return SyncResult(accepted=True, transaction=txn)
