from collections.abc import Callable, Iterable, MutableMapping
from dataclasses import dataclass, field
from time import time

from batch_categorizer.domain.text import first_word
from batch_categorizer.logger import get_logger
from batch_categorizer.models import Transaction

logger = get_logger(__name__)


@dataclass
class RecoveryReport:
    attached: dict[str, str] = field(default_factory=dict)
    created: dict[str, str] = field(default_factory=dict)
    unrecoverable: list[str] = field(default_factory=list)

    @property
    def assignments(self) -> dict[str, str]:
        return {**self.attached, **self.created}


def _merchant_key(transaction: Transaction) -> str | None:
    merchant = (transaction.merchant or "").strip() or first_word(transaction.description)
    return merchant.lower() if merchant else None


def recover_unbatched(
    transactions: Iterable[Transaction],
    batches: MutableMapping[str, list[Transaction]],
    *,
    clock: Callable[[], float] = time,
) -> RecoveryReport:
    """
    Give every transaction without a batch a batch id.

    An orphan joins an existing batch whose first member has the same
    merchant (or first description word) and type. Otherwise it goes into a
    recovered batch keyed by upload and type. Transactions that already carry
    a batch id are left alone, so running this twice changes nothing.

    ``batches`` is updated in place; the report lists the new assignments for
    the persistence layer.
    """
    report = RecoveryReport()
    suffix = str(int(clock() * 1000))[-4:]
    recovered_ids: dict[tuple[str, str], str] = {}

    for transaction in transactions:
        if transaction.batch_id:
            continue

        logger.warning(
            "[RECOVERY] Transaction without batch: %s - %s",
            transaction.id,
            transaction.description,
        )
        if not transaction.upload_id:
            logger.error("[RECOVERY] Cannot recover transaction %s - missing upload id", transaction.id)
            report.unrecoverable.append(transaction.id)
            continue

        merchant = _merchant_key(transaction)
        target = None
        if merchant:
            for batch_id, members in batches.items():
                if not members:
                    continue
                lead = members[0]
                if _merchant_key(lead) == merchant and lead.type == transaction.type:
                    target = batch_id
                    break

        if target is not None:
            report.attached[transaction.id] = target
            logger.info("[RECOVERY] Attached %s to existing batch %s", transaction.id, target)
        else:
            key = (transaction.upload_id, transaction.type)
            target = recovered_ids.get(key)
            if target is None:
                target = f"{transaction.upload_id}_batch_recovered_{transaction.type}_{suffix}"
                recovered_ids[key] = target
                logger.info("[RECOVERY] Creating recovered batch %s", target)
            report.created[transaction.id] = target

        batches.setdefault(target, []).append(transaction)
        transaction.batch_id = target

    if report.assignments or report.unrecoverable:
        logger.warning(
            "[RECOVERY] Assigned %s transactions, %s unrecoverable",
            len(report.assignments),
            len(report.unrecoverable),
        )
    return report
