"""
Settlement recording for approved consent requests.

An approval is anchored by an external settlement record (transaction
reference, block number, gas used, timestamp). The on-chain registry
contract is outside this package; SimulatedSettlementRecorder produces
realistic-looking metadata for development and tests.
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementRecord:
    """Reference to the external record anchoring an approval."""
    reference: str
    block_number: int
    gas_used: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementRecord":
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            reference=data["reference"],
            block_number=int(data["block_number"]),
            gas_used=int(data["gas_used"]),
            timestamp=timestamp,
        )


class SettlementRecorder(ABC):
    """Records an approval with the external consent registry."""

    @abstractmethod
    def record_approval(self, request_id: UUID) -> SettlementRecord:
        """
        Anchor an approval.

        Raises:
            TimeoutError / ConnectionError: registry unreachable
        """


class SimulatedSettlementRecorder(SettlementRecorder):
    """Generates transaction-shaped metadata without touching a chain."""

    BASE_GAS = 21000

    def __init__(self, start_block: int = 1_000_000):
        self._block = start_block
        self._lock = threading.Lock()

    def record_approval(self, request_id: UUID) -> SettlementRecord:
        with self._lock:
            self._block += 1
            block = self._block

        record = SettlementRecord(
            reference="0x" + secrets.token_hex(32),
            block_number=block,
            gas_used=self.BASE_GAS + secrets.randbelow(50000),
            timestamp=datetime.now(timezone.utc),
        )
        logger.debug(f"Simulated settlement for {request_id}: {record.reference}")
        return record
