"""
Return processing.

A return refunds some or all items of a redeemed transaction. The original
transaction's items are never edited; instead its QR is invalidated and, when
items remain, a follow-on transaction holding the remainder is issued with
`parent_transaction_id` pointing at the original.

RULES:
- the original must exist and its QR must have been redeemed
- a transaction can be returned against once (its QR is then invalidated)
- returned quantities may not exceed the purchased quantities
- refund_amount defaults to the value of the returned items and may not
  exceed the original total
"""
import logging
import uuid
from collections import defaultdict
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from ..errors import NotFound, ReturnError
from ..models import STATUS_COMPLETED, Return, Transaction
from ..schemas import CENT, CreateReturnDto, CreateTransactionDto, TransactionItem, canonical_uuid, items_total, to_decimal
from ..time_utils import utcnow
from .concurrency import run_with_retry

log = logging.getLogger(__name__)

DEFAULT_REASON = 'return'


def split_items(original_items, returned_items):
    """
    Split the original items into (remaining, refund_value).

    Quantities for the same item_id are added up before checking them
    against the original.
    """
    wanted = defaultdict(int)
    for r in returned_items:
        wanted[canonical_uuid(r.item_id)] += r.quantity

    available = defaultdict(int)
    for item in original_items:
        available[canonical_uuid(item['id'])] += item['quantity']

    for item_id, quantity in wanted.items():
        if item_id not in available:
            raise ReturnError(f'Item {item_id} is not part of the original transaction')
        if quantity > available[item_id]:
            raise ReturnError(
                f'Returned quantity ({quantity}) exceeds purchased quantity ({available[item_id]}) for item {item_id}'
            )

    remaining = []
    refund_value = Decimal('0')
    for item in original_items:
        item_id = canonical_uuid(item['id'])
        taken = min(wanted[item_id], item['quantity'])
        wanted[item_id] -= taken
        refund_value += to_decimal(item['price']) * taken
        left = item['quantity'] - taken
        if left > 0:
            remaining.append(TransactionItem(**{**item, 'quantity': left}))
    return tuple(remaining), refund_value.quantize(CENT)


def process_return(dto: CreateReturnDto, transactions, session, now=None) -> Return:
    """
    Invalidate the original QR, issue a transaction for what is left and record the Return.

    Raises:
        ReturnError: with `status` 404, 400 or 409 when a rule is broken
    """
    now = now or utcnow()
    try:
        original = transactions.get(dto.original_transaction_id)
    except NotFound:
        raise ReturnError('Transaction not found', 404) from None

    if not original.qr_used:
        raise ReturnError('Cannot return a transaction whose QR has not been redeemed')
    if original.qr_invalidated:
        raise ReturnError('Transaction was already invalidated', 409)

    remaining, refund_value = split_items(original.items, dto.returned_items)
    refund = dto.refund_amount if dto.refund_amount is not None else refund_value
    if refund > to_decimal(original.total):
        raise ReturnError('refund_amount exceeds the transaction total')

    new_id = dto.new_transaction_id or str(uuid.uuid4())
    if remaining and transactions.exists(new_id):
        raise ReturnError(f'Transaction {new_id} already exists', 409)

    follow_on = None
    if remaining:
        follow_on = CreateTransactionDto(
            id=new_id,
            user_id=original.user_id,
            items=remaining,
            total=items_total(remaining),
            created_at=now,
            parent_transaction_id=original.id,
        )

    def _op():
        # invalidation, follow-on and Return row commit together or not at all
        if not transactions.stage_invalidate(original.id, dto.reason or DEFAULT_REASON, now):
            session.rollback()
            # a concurrent return got there first
            raise ReturnError('Transaction was already invalidated', 409)
        record = Return(
            original_transaction_id=original.id,
            new_transaction_id=new_id if follow_on is not None else None,
            returned_items=[{'item_id': r.item_id, 'quantity': r.quantity} for r in dto.returned_items],
            reason=dto.reason,
            refund_amount=refund,
            timestamp=now,
        )
        try:
            if follow_on is not None:
                session.add(transactions.build(follow_on, status=STATUS_COMPLETED))
                # insert the follow-on before the Return that references it
                session.flush()
            session.add(record)
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if follow_on is not None and session.get(Transaction, new_id) is not None:
                raise ReturnError(f'Transaction {new_id} already exists', 409) from exc
            raise
        return record

    record = run_with_retry(session, _op)
    log.info('return %s processed for transaction %s (refund %s, follow-on %s)',
             record.id, original.id, refund, record.new_transaction_id)
    return record
