"""
Verification Pipeline

An ordered list of gates. Each gate either passes (optionally attaching
data to the result) or fails with a typed reason; the first failure stops
the pipeline and becomes the result. Gates whose input is absent are
skipped when optional and fail with ValidationError when required.

Every run writes exactly one VERIFICATION audit row, whatever the outcome.

Pre-built pipelines:
- identity_pipeline: identity gate
- proof_pipeline: proof gate
- credential_pipeline: credential gate
- storage_pipeline: storage gate
- multi_factor_pipeline: identity (required), then proof, credential and
  storage (each only when its input is supplied)

Usage:
    pipeline = multi_factor_pipeline(identity_gate, proof_gate, credential_gate, storage_gate, audit)
    result = pipeline.run(VerificationRequest(identity=IdentityClaim("alice.eth", "0xabc")))
    if not result.passed:
        return jsonify(result.to_dict()), 403
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..audit import AuditRecorder, VerificationAuditDetails
from ..database import AuditAction
from ..errors import ErrorKind
from .gates import Gate, GateOutcome, VerificationRequest

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Composite outcome of a pipeline run."""
    pipeline: str
    passed: bool
    checks: List[GateOutcome] = field(default_factory=list)
    failed_gate: Optional[str] = None
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    def check(self, gate: str) -> Optional[GateOutcome]:
        return next((c for c in self.checks if c.gate == gate), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "passed": self.passed,
            "failed_gate": self.failed_gate,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "retryable": self.retryable,
            "checks": [c.to_dict() for c in self.checks],
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class VerificationPipeline:
    """
    Runs gates in order and short-circuits on the first failure.

    Args:
        name: Pipeline name recorded in results and audit rows
        gates: (gate, required) pairs in execution order
        audit: AuditRecorder receiving one row per run
    """

    def __init__(self, name: str, gates: Sequence[Tuple[Gate, bool]], audit: Optional[AuditRecorder] = None):
        if not gates:
            raise ValueError("A pipeline needs at least one gate")
        self.name = name
        self.gates = list(gates)
        self.audit = audit

    def run(self, request: VerificationRequest) -> VerificationResult:
        result = VerificationResult(pipeline=self.name, passed=True)

        for gate, required in self.gates:
            if not gate.applies(request):
                if required:
                    outcome = gate.failed(ErrorKind.VALIDATION, f"Input for the {gate.name} check is missing")
                else:
                    result.checks.append(gate.skipped())
                    continue
            else:
                outcome = gate.run(request)

            result.checks.append(outcome)
            if not outcome.passed:
                result.passed = False
                result.failed_gate = outcome.gate
                result.kind = outcome.kind
                result.message = outcome.message
                break
            result.data.update(outcome.data)

        if result.passed:
            logger.info(f"Verification {self.name} passed for {request.actor}")
        else:
            logger.warning(
                f"Verification {self.name} failed at {result.failed_gate} "
                f"({result.kind.value if result.kind else None}): {result.message}"
            )

        self._audit(request, result)
        return result

    def _audit(self, request: VerificationRequest, result: VerificationResult) -> None:
        if self.audit is None:
            return
        self.audit.record(
            AuditAction.VERIFICATION,
            actor=request.actor,
            target=self.name,
            details=VerificationAuditDetails(
                pipeline=self.name,
                passed=result.passed,
                failed_gate=result.failed_gate,
                error_kind=result.kind.value if result.kind else None,
                checks=[c.to_dict() for c in result.checks],
            ),
            success=result.passed,
            error_message=result.message,
        )


def identity_pipeline(identity_gate: Gate, audit: Optional[AuditRecorder] = None) -> VerificationPipeline:
    return VerificationPipeline("identity", [(identity_gate, True)], audit)


def proof_pipeline(proof_gate: Gate, audit: Optional[AuditRecorder] = None) -> VerificationPipeline:
    return VerificationPipeline("proof", [(proof_gate, True)], audit)


def credential_pipeline(credential_gate: Gate, audit: Optional[AuditRecorder] = None) -> VerificationPipeline:
    return VerificationPipeline("credential", [(credential_gate, True)], audit)


def storage_pipeline(storage_gate: Gate, audit: Optional[AuditRecorder] = None) -> VerificationPipeline:
    return VerificationPipeline("storage", [(storage_gate, True)], audit)


def multi_factor_pipeline(
    identity_gate: Gate,
    proof_gate: Gate,
    credential_gate: Gate,
    storage_gate: Gate,
    audit: Optional[AuditRecorder] = None,
) -> VerificationPipeline:
    return VerificationPipeline(
        "multi_factor",
        [
            (identity_gate, True),
            (proof_gate, False),
            (credential_gate, False),
            (storage_gate, False),
        ],
        audit,
    )
