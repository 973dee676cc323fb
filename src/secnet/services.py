"""
Composition root for SecNet.

``build_services`` wires every component from Settings and returns a
SecNetServices object exposing the operations used by the HTTP adapter and
by other callers:

- create_consent_request / approve / deny / revoke
- run_multi_factor_verification (and run_verification for single factors)
- store_encrypted / retrieve_encrypted
- monitor_tick

Collaborators that talk to the outside world (identity resolver,
settlement recorder, blob store, Redis) can be injected; otherwise
development implementations are used.

Usage:
    services = build_services(Settings.from_env(), redis_client=redis.Redis())
    request = services.create_consent_request("0xabc", "0xdef", "medical", "Trial screening",
                                              None, expires_at)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from .audit import AuditRecorder
from .config import Settings
from .consent import AccessScope, ConsentLedger, ConsentRequest, Party, SqlAlchemyConsentRepository
from .credentials import CredentialService
from .database import DataCategory, create_tables, make_engine
from .errors import Forbidden, ValidationError
from .locking import LocalLockManager
from .monitoring import AnomalyMonitor, MonitorScheduler, TickResult
from .nonces import MemoryNonceStore, NonceStore, RedisNonceStore
from .notifications import LoggingNotificationSink, NotificationSink, RedisNotificationSink
from .proofs import ProofService
from .settlement import SettlementRecorder, SimulatedSettlementRecorder
from .storage import BlobMetadata, BlobStore, ContentStore, InMemoryBlobStore, IPFSBlobStore, RetrievedContent, StorageReceipt
from .verification import (
    CredentialGate,
    IdentityGate,
    IdentityResolver,
    ProofGate,
    StaticIdentityResolver,
    StorageGate,
    VerificationPipeline,
    VerificationRequest,
    VerificationResult,
    credential_pipeline,
    identity_pipeline,
    multi_factor_pipeline,
    proof_pipeline,
    storage_pipeline,
)

logger = logging.getLogger(__name__)


def _party(value: Union[Party, str, Dict[str, Any]]) -> Party:
    if isinstance(value, Party):
        return value
    return Party.from_dict(value)


@dataclass
class SecNetServices:
    settings: Settings
    session_factory: Callable
    audit: AuditRecorder
    notifier: NotificationSink
    nonce_store: NonceStore
    ledger: ConsentLedger
    proofs: ProofService
    credentials: CredentialService
    content: ContentStore
    identity_resolver: IdentityResolver
    pipelines: Dict[str, VerificationPipeline]
    monitor: AnomalyMonitor
    scheduler: MonitorScheduler

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    def create_consent_request(
        self,
        requester: Union[Party, str, Dict[str, Any]],
        owner: Union[Party, str, Dict[str, Any]],
        category: Union[DataCategory, str],
        purpose: str,
        scope: Optional[Union[AccessScope, Dict[str, Any]]],
        expires_at: datetime,
    ) -> ConsentRequest:
        if isinstance(scope, dict):
            scope = AccessScope.from_dict(scope)
        return self.ledger.create(_party(requester), _party(owner), category, purpose, scope, expires_at)

    def approve_consent_request(self, request_id: Union[UUID, str], actor: str,
                                reason: Optional[str] = None) -> ConsentRequest:
        return self.ledger.approve(request_id, actor, reason)

    def deny_consent_request(self, request_id: Union[UUID, str], actor: str,
                             reason: Optional[str] = None) -> ConsentRequest:
        return self.ledger.deny(request_id, actor, reason)

    def revoke_consent_request(self, request_id: Union[UUID, str], actor: str,
                               reason: Optional[str] = None) -> ConsentRequest:
        return self.ledger.revoke(request_id, actor, reason)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def run_multi_factor_verification(self, request: VerificationRequest) -> VerificationResult:
        return self.pipelines["multi_factor"].run(request)

    def run_verification(self, pipeline: str, request: VerificationRequest) -> VerificationResult:
        if pipeline not in self.pipelines:
            raise ValidationError(f"Unknown verification pipeline '{pipeline}'",
                                  details={"allowed": sorted(self.pipelines)})
        return self.pipelines[pipeline].run(request)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def store_encrypted(
        self,
        payload: Any,
        owner: str,
        category: Union[DataCategory, str],
        metadata: Optional[BlobMetadata] = None,
        pin: bool = True,
    ) -> StorageReceipt:
        return self.content.store_encrypted(payload, owner, category, metadata=metadata, pin=pin)

    def retrieve_encrypted(
        self,
        data_address: str,
        metadata_address: str,
        owner: str,
        category: Union[DataCategory, str],
        actor: Optional[str] = None,
    ) -> RetrievedContent:
        """
        Decrypt stored content. A caller other than the owner needs an
        approved consent from the owner for the category.

        Raises:
            Forbidden: actor has no approved consent
            ContentNotFound, DecryptionFailed, TransientError
        """
        if actor and actor.strip().lower() != (owner or "").strip().lower():
            if not self.ledger.has_active_consent(actor, owner, category):
                logger.warning(f"Retrieval blocked: {actor} has no approved consent from {owner}")
                raise Forbidden("Approved consent is required to retrieve this data",
                                details={"owner": owner, "category": str(category)})
        return self.content.retrieve_encrypted(data_address, metadata_address, owner, category, actor=actor)

    def set_pinned(self, data_address: str, metadata_address: str, category: Union[DataCategory, str],
                   actor: str, pinned: bool = True) -> None:
        """Pin or unpin content; only its owner may do either."""
        self.content.set_pinned(data_address, metadata_address, actor, category, pinned=pinned)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def monitor_tick(self) -> TickResult:
        return self.scheduler.run_once()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable] = None,
    redis_client=None,
    identity_resolver: Optional[IdentityResolver] = None,
    settlement: Optional[SettlementRecorder] = None,
    blob_store: Optional[BlobStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SecNetServices:
    """
    Wire SecNet from settings.

    Args:
        settings: Settings (read from the environment if omitted)
        session_factory: SQLAlchemy session factory (built from settings.database_url if omitted)
        redis_client: Redis client for notifications and the replay store (in-process fallbacks otherwise)
        identity_resolver: Name-ownership resolver (empty static resolver otherwise)
        settlement: Settlement recorder (simulated otherwise)
        blob_store: Blob store (IPFS when settings.ipfs_api_url is set, in-memory otherwise)
        clock: Callable returning the current aware UTC datetime
    """
    settings = settings or Settings.from_env()
    timeout = settings.external_timeout

    if session_factory is None:
        engine = make_engine(settings.database_url)
        create_tables(engine)
        session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    if redis_client is not None:
        notifier: NotificationSink = RedisNotificationSink(redis_client)
        nonce_store: NonceStore = RedisNonceStore(redis_client)
    else:
        notifier = LoggingNotificationSink()
        nonce_store = MemoryNonceStore()

    if blob_store is None:
        if settings.ipfs_api_url:
            blob_store = IPFSBlobStore(settings.ipfs_api_url, timeout=timeout)
        else:
            blob_store = InMemoryBlobStore()

    audit = AuditRecorder(session_factory)

    ledger = ConsentLedger(
        SqlAlchemyConsentRepository(session_factory),
        settlement or SimulatedSettlementRecorder(),
        notifier,
        audit,
        lock_manager=LocalLockManager(),
        clock=clock,
        external_timeout=timeout,
    )
    proofs = ProofService(clock=clock)
    credentials = CredentialService(session_factory, settings.signing_secret, settings.domain, audit=audit, clock=clock)
    content = ContentStore(blob_store, settings.server_secret, audit=audit, external_timeout=timeout, clock=clock)
    resolver = identity_resolver or StaticIdentityResolver()

    identity_gate = IdentityGate(resolver, timeout=timeout)
    proof_gate = ProofGate(proofs, nonce_store, timeout=timeout)
    credential_gate = CredentialGate(credentials, timeout=timeout)
    storage_gate = StorageGate(content, timeout=timeout)

    pipelines = {
        "identity": identity_pipeline(identity_gate, audit),
        "proof": proof_pipeline(proof_gate, audit),
        "credential": credential_pipeline(credential_gate, audit),
        "storage": storage_pipeline(storage_gate, audit),
        "multi_factor": multi_factor_pipeline(identity_gate, proof_gate, credential_gate, storage_gate, audit),
    }

    monitor = AnomalyMonitor(session_factory, ledger, notifier, clock=clock)
    scheduler = MonitorScheduler(monitor, interval=settings.monitor_interval, ledger=ledger)

    logger.info(
        f"SecNet services ready (blob store: {type(blob_store).__name__}, "
        f"redis: {'yes' if redis_client is not None else 'no'})"
    )

    return SecNetServices(
        settings=settings,
        session_factory=session_factory,
        audit=audit,
        notifier=notifier,
        nonce_store=nonce_store,
        ledger=ledger,
        proofs=proofs,
        credentials=credentials,
        content=content,
        identity_resolver=resolver,
        pipelines=pipelines,
        monitor=monitor,
        scheduler=scheduler,
    )
