"""
Owner erasure.

Removes an owner's pseudonymized rows from the warehouse and makes sure none
of their queued or dead-lettered events are delivered afterwards.
"""

from dataclasses import asdict, dataclass

from src.core.pseudonymization import PseudonymizationTransformer
from src.observability.logger import get_logger, identity_ref
from src.streaming.transport import EventTransport
from src.warehouse.upsert import WarehouseWriter

from .dead_letter import DeadLetterStore

logger = get_logger(__name__)

ERASURE_ACTOR = "erasure"


@dataclass
class ErasureReport:
    identity_ref: str
    rows_deleted: int = 0
    queued_events_discarded: int = 0
    dead_letters_abandoned: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class OwnerErasureService:
    """
    Erases one owner's data from everything the sync controls.

    The warehouse never stores the owner identity, so rows are located by
    recomputing the identity hash with the process key.
    """

    def __init__(
        self,
        transformer: PseudonymizationTransformer,
        writer: WarehouseWriter,
        dead_letters: DeadLetterStore,
        transport: EventTransport | None = None,
    ):
        self.transformer = transformer
        self.writer = writer
        self.dead_letters = dead_letters
        self.transport = transport

    def erase(self, owner_id: str) -> ErasureReport:
        """
        Erase an owner.

        Queued events are discarded first so no worker writes a row after the
        warehouse delete.

        Args:
            owner_id: Owner identity reference

        Returns:
            ErasureReport with counts per store
        """
        identity_hash = self.transformer.hash_identity(owner_id)
        report = ErasureReport(identity_ref=identity_ref(identity_hash))

        if self.transport is not None:
            report.queued_events_discarded = self.transport.discard_owner(owner_id)

        report.rows_deleted = self.writer.erase_identity(identity_hash)

        for entry in self.dead_letters.pending_for_identity(owner_id):
            self.dead_letters.mark_abandoned(
                entry.event_id,
                "Owner data erased; event must not be delivered",
                actor=ERASURE_ACTOR,
            )
            report.dead_letters_abandoned += 1

        logger.info(
            f"Erased owner {report.identity_ref}: {report.rows_deleted} rows, "
            f"{report.queued_events_discarded} queued, {report.dead_letters_abandoned} dead letters",
            extra={"identity_ref": report.identity_ref},
        )
        return report
