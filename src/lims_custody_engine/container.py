"""Engine wiring — builds every component from Settings.

One EngineContainer is created per application. The trail cache, the
per-specimen locks and the live stream are shared by the recorder and the
compliance service, so both must come from the same container.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from lims_custody_engine.adapters.fhir_store import FhirResourceStore
from lims_custody_engine.adapters.identity import ContextIdentityProvider
from lims_custody_engine.adapters.memory_store import InMemoryResourceStore
from lims_custody_engine.audit_trail.builder import AuditTrailBuilder
from lims_custody_engine.audit_trail.cache import TrailCache
from lims_custody_engine.audit_trail.stream import LiveEventStream
from lims_custody_engine.compliance.evaluator import ComplianceEvaluator
from lims_custody_engine.compliance.policy import CompliancePolicy
from lims_custody_engine.compliance.reporter import ComplianceReportAggregator
from lims_custody_engine.compliance.requirements import RequirementCatalog, load_requirements
from lims_custody_engine.core.compliance_service import ComplianceService
from lims_custody_engine.core.interfaces import IIdentityProvider, IResourceStore
from lims_custody_engine.core.recorder import CustodyEventRecorder
from lims_custody_engine.observability import get_logger
from lims_custody_engine.registry.locations import LocationRegistry
from lims_custody_engine.settings import Settings

logger = get_logger(__name__)


@dataclass
class EngineContainer:
    """All engine components for one application instance."""

    settings: Settings
    registry: LocationRegistry
    catalog: RequirementCatalog
    policy: CompliancePolicy
    store: IResourceStore
    identity: IIdentityProvider
    evaluator: ComplianceEvaluator
    builder: AuditTrailBuilder
    cache: TrailCache
    stream: LiveEventStream
    recorder: CustodyEventRecorder
    compliance: ComplianceService
    reporter: ComplianceReportAggregator

    async def close(self) -> None:
        """Release collaborator connections."""
        if isinstance(self.store, FhirResourceStore):
            await self.store.close()


def build_container(
    settings: Settings,
    store: IResourceStore | None = None,
    identity: IIdentityProvider | None = None,
    clock: Callable[[], datetime] | None = None,
) -> EngineContainer:
    """Wire the engine from settings.

    Args:
        settings: Service settings.
        store: Resource Store override. Defaults to the FHIR client when a URL
            is configured, else the in-memory store.
        identity: Identity Provider override. Defaults to the request-bound provider.
        clock: Optional clock shared by recorder, service and reporter.

    Returns:
        A fully wired EngineContainer.
    """
    registry = (
        LocationRegistry.from_yaml(settings.registry_file) if settings.registry_file else LocationRegistry()
    )
    catalog = load_requirements(settings.requirements_file) if settings.requirements_file else RequirementCatalog()
    policy = CompliancePolicy.from_settings(settings)

    if store is None:
        if settings.resource_store_url:
            store = FhirResourceStore(
                base_url=settings.resource_store_url,
                token=settings.resource_store_token,
                timeout_s=settings.resource_store_timeout_s,
            )
        else:
            store = InMemoryResourceStore()
    identity = identity or ContextIdentityProvider()

    evaluator = ComplianceEvaluator(policy, registry)
    builder = AuditTrailBuilder(store, evaluator, catalog, policy)
    cache = TrailCache()
    stream = LiveEventStream(queue_size=settings.stream_queue_size)
    recorder = CustodyEventRecorder(
        store=store,
        identity=identity,
        registry=registry,
        builder=builder,
        cache=cache,
        stream=stream,
        clock=clock,
    )
    compliance = ComplianceService(
        builder=builder,
        cache=cache,
        locks=recorder.locks,
        evaluator=evaluator,
        catalog=catalog,
        identity=identity,
        stream=stream,
        clock=clock,
    )
    reporter = ComplianceReportAggregator(
        store=store,
        builder=builder,
        identity=identity,
        default_deadline_seconds=settings.report_deadline_seconds,
        clock=clock,
    )

    logger.info(
        "Custody engine wired",
        store=type(store).__name__,
        location_count=len(registry.list_locations()),
        requirement_count=len(catalog.list_requirements()),
    )

    return EngineContainer(
        settings=settings,
        registry=registry,
        catalog=catalog,
        policy=policy,
        store=store,
        identity=identity,
        evaluator=evaluator,
        builder=builder,
        cache=cache,
        stream=stream,
        recorder=recorder,
        compliance=compliance,
        reporter=reporter,
    )
