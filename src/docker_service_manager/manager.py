"""Service lifecycle workflows: install, run, stop, remove and list."""

from __future__ import annotations

from typing import List, Optional

from .config import Settings, get_settings
from .engine import ContainerEngine, UdockerEngine, detect_internal_port
from .errors import (
    CollaboratorError,
    ConflictError,
    PartialTeardownError,
    PortConflictError,
    ServiceManagerError,
)
from .logging import get_logger
from .models import (
    HostSummary,
    ImageReference,
    InstallPlan,
    RemoveReport,
    RunResult,
    ServiceListing,
    ServiceRecord,
    UnitStatus,
    default_window_name,
    validate_window_name,
)
from .ports import PortAllocator, validate_port
from .registry import ServiceRegistry
from .session import SessionSupervisor, TmuxHost, build_run_command

LOGGER = get_logger(__name__)


class ServiceManager:
    """Coordinates the registry, port allocator, container engine and session supervisor."""

    def __init__(
        self,
        settings: Settings,
        registry: ServiceRegistry,
        allocator: PortAllocator,
        engine: ContainerEngine,
        supervisor: SessionSupervisor,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.allocator = allocator
        self.engine = engine
        self.supervisor = supervisor

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def prepare(self, image: str, overwrite: bool = False) -> InstallPlan:
        """Pull an image and propose an install plan.

        Args:
            image: Image reference, tag optional
            overwrite: Allow replacing an installed service of the same name

        Returns:
            Plan with detected internal port and a suggested external port

        Raises:
            InvalidInputError: Malformed image reference
            ConflictError: Service exists and ``overwrite`` is false
            CollaboratorError: Pull failed
        """
        ref = ImageReference.parse(image)
        name = ref.service_name
        if self.registry.exists(name) and not overwrite:
            raise ConflictError(f"Service '{name}' already exists")

        self.engine.pull(ref.full)

        detected = detect_internal_port(self.engine, ref.full)
        if detected:
            internal_port = detected[0]
            port_detected = True
        else:
            internal_port = self.settings.default_internal_port
            port_detected = False
            LOGGER.warning(
                "Could not detect exposed port, using default",
                image=ref.full,
                internal_port=internal_port,
            )

        exclude = name if overwrite else None
        external_port = self.allocator.find_free_port(internal_port, exclude=exclude)

        plan = InstallPlan(
            image=ref.full,
            name=name,
            container_name=f"{name}_container",
            window_name=default_window_name(name),
            internal_port=internal_port,
            external_port=external_port,
            port_detected=port_detected,
            detected_ports=detected,
            overwrite=overwrite,
            pulled=True,
        )
        LOGGER.info(
            "Prepared install plan",
            service=name,
            image=ref.full,
            port_mapping=f"{external_port}:{internal_port}",
        )
        return plan

    def check_plan(self, plan: InstallPlan) -> None:
        """Validate a plan against the registry and the system ports.

        Raises:
            InvalidInputError: Port outside [1, 65535] or unusable window name
            ConflictError: Name or window already taken
            PortConflictError: External port taken, with a suggested alternative
        """
        validate_port(plan.external_port)
        validate_port(plan.internal_port)
        validate_window_name(plan.window_name)

        exclude = plan.name if plan.overwrite else None
        if exclude is None and self.registry.exists(plan.name):
            raise ConflictError(f"Service '{plan.name}' already exists")

        if not self.allocator.is_port_free(plan.external_port, exclude=exclude):
            raise PortConflictError(
                plan.external_port,
                owner=self.allocator.conflict_owner(plan.external_port, exclude=exclude),
                suggestion=self.allocator.find_free_port(plan.external_port, exclude=exclude),
            )

        owner = self.registry.window_owner(plan.window_name, exclude=exclude)
        if owner:
            raise ConflictError(f"Window '{plan.window_name}' is already used by service: {owner}")

    def commit(self, plan: InstallPlan) -> ServiceRecord:
        """Create the container and persist the record described by ``plan``.

        A plan that fails validation is left untouched so the caller can
        adjust it. Any later failure rolls back the container, the data
        directory and the pulled image.
        """
        self.check_plan(plan)

        existing = self.registry.find(plan.name)
        if existing is not None and plan.overwrite:
            LOGGER.info("Replacing installed service", service=plan.name, image=existing.image)
            self._teardown(existing, keep_image=existing.image == plan.image, report=None)
            self.registry.delete(plan.name)

        container_ref: Optional[str] = None
        try:
            container_ref = self.engine.create(plan.container_name, plan.image)
            self.engine.setup(container_ref, self.settings.execmode)
            record = ServiceRecord(
                name=plan.name,
                image=plan.image,
                container_name=plan.container_name,
                container_ref=container_ref,
                external_port=plan.external_port,
                internal_port=plan.internal_port,
                data_dir=self.registry.data_dir_for(plan.name),
                window_name=plan.window_name,
                port_detected=plan.port_detected,
            )
            self.registry.create(record, overwrite=plan.overwrite)
        except Exception as e:
            LOGGER.error("Install failed, rolling back", service=plan.name, error=str(e))
            self._rollback(plan, container_ref)
            raise

        LOGGER.info(
            "Installed service",
            service=record.name,
            port_mapping=record.port_mapping,
            container=record.container_ref,
        )
        return record

    def discard(self, plan: InstallPlan) -> None:
        """Drop an abandoned plan, removing the image it pulled when unused."""
        if plan.pulled and not self._image_in_use(plan.image):
            try:
                self.engine.remove_image(plan.image)
            except CollaboratorError as e:
                LOGGER.warning("Failed to remove pulled image", image=plan.image, error=str(e))

    def apply_overrides(
        self,
        plan: InstallPlan,
        external_port: Optional[int] = None,
        internal_port: Optional[int] = None,
        container_name: Optional[str] = None,
        window_name: Optional[str] = None,
    ) -> InstallPlan:
        """Return a copy of ``plan`` with operator-supplied values applied.

        When only ``internal_port`` is overridden, the external port is
        re-suggested from it.

        Raises:
            InvalidInputError: Port outside [1, 65535] or unusable window name
        """
        updates = {}
        if internal_port is not None:
            updates["internal_port"] = validate_port(internal_port)
            updates["port_detected"] = True
            if external_port is None:
                exclude = plan.name if plan.overwrite else None
                updates["external_port"] = self.allocator.find_free_port(
                    updates["internal_port"], exclude=exclude
                )
        if external_port is not None:
            updates["external_port"] = validate_port(external_port)
        if container_name:
            updates["container_name"] = container_name
        if window_name:
            updates["window_name"] = validate_window_name(window_name)
        return plan.model_copy(update=updates)

    def install(
        self,
        image: str,
        external_port: Optional[int] = None,
        internal_port: Optional[int] = None,
        container_name: Optional[str] = None,
        window_name: Optional[str] = None,
        overwrite: bool = False,
    ) -> ServiceRecord:
        """Prepare and commit an install in one step."""
        plan = self.prepare(image, overwrite=overwrite)
        try:
            plan = self.apply_overrides(
                plan,
                external_port=external_port,
                internal_port=internal_port,
                container_name=container_name,
                window_name=window_name,
            )
            self.check_plan(plan)
        except ServiceManagerError:
            self.discard(plan)
            raise
        return self.commit(plan)

    def _image_in_use(self, image: str, exclude: Optional[str] = None) -> bool:
        return any(r.image == image for r in self.registry.list() if r.name != exclude)

    def _rollback(self, plan: InstallPlan, container_ref: Optional[str]) -> None:
        if container_ref:
            try:
                self.engine.remove(container_ref)
            except CollaboratorError as e:
                LOGGER.warning("Rollback could not remove container", container=container_ref, error=str(e))
        if not self.registry.exists(plan.name):
            # Data directory belongs to no record at this point
            try:
                self.registry.delete(plan.name)
            except OSError as e:
                LOGGER.warning("Rollback could not remove data directory", service=plan.name, error=str(e))
        self.discard(plan)

    # ------------------------------------------------------------------
    # Run / stop / status
    # ------------------------------------------------------------------

    def run(self, name: str) -> RunResult:
        """Start an installed service in its own unit.

        Raises:
            NotFoundError: Unknown service
        """
        record = self.registry.get(name)
        if self.supervisor.status(record.window_name) is UnitStatus.RUNNING:
            LOGGER.info("Service already running", service=name, window=record.window_name)
            return RunResult(record=record, started=False)

        command = build_run_command(record, self.engine, self.settings.volume_target)
        started = self.supervisor.start(record.window_name, command)
        LOGGER.info("Service started", service=name, port_mapping=record.port_mapping)
        return RunResult(record=record, started=started, command=command)

    def stop(self, name: str) -> bool:
        """Stop a service's unit, leaving the install in place.

        Returns:
            True if a running unit was stopped
        """
        unit = self._unit_for(name)
        if unit is None:
            LOGGER.info("Window belongs to another service, not stopping", name=name)
            return False
        stopped = self.supervisor.stop(unit)
        if stopped:
            LOGGER.info("Service stopped", service=name)
        return stopped

    def status(self, name: str) -> UnitStatus:
        """Live status of an installed service.

        Raises:
            NotFoundError: Unknown service
        """
        record = self.registry.get(name)
        return self.supervisor.status(record.window_name)

    def _unit_for(self, name: str) -> Optional[str]:
        """Unit a name refers to, or None if it is another service's window.

        An unknown name still addresses a stray unit of that name.
        """
        record = self.registry.find(name)
        if record is not None:
            return record.window_name
        if self.registry.window_owner(name) is not None:
            return None
        return name

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------

    def _teardown(self, record: ServiceRecord, keep_image: bool, report: Optional[RemoveReport]) -> None:
        """Stop the unit, remove the container and then the image, best-effort."""

        def _collect(step: str, error: Exception) -> None:
            LOGGER.warning("Teardown step failed", service=record.name, step=step, error=str(error))
            if report is not None:
                report.errors.append(error)

        try:
            stopped = self.supervisor.stop(record.window_name)
            if report is not None:
                report.stopped = stopped
        except CollaboratorError as e:
            _collect("stop", e)

        try:
            self.engine.remove(record.container_ref)
        except CollaboratorError as e:
            _collect("remove container", e)

        if not keep_image and not self._image_in_use(record.image, exclude=record.name):
            try:
                self.engine.remove_image(record.image)
            except CollaboratorError as e:
                _collect("remove image", e)

    def remove(self, name: str, strict: bool = False) -> RemoveReport:
        """Remove a service completely.

        Collaborator failures are collected and never prevent deletion of the
        record and data directory. Removing an unknown name succeeds.

        Raises:
            PartialTeardownError: With ``strict``, if any teardown step failed
        """
        record = self.registry.find(name)
        report = RemoveReport(name=name, existed=record is not None)

        if record is not None:
            self._teardown(record, keep_image=False, report=report)
        elif self._unit_for(name) is not None:
            try:
                report.stopped = self.supervisor.stop(name)
            except CollaboratorError as e:
                report.errors.append(e)

        try:
            self.registry.delete(name)
        except OSError as e:
            LOGGER.warning("Failed to remove data directory", service=name, error=str(e))
            report.errors.append(e)

        LOGGER.info(
            "Service removed",
            service=name,
            existed=report.existed,
            errors=len(report.errors),
        )
        if strict and report.partial:
            raise PartialTeardownError(report)
        return report

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def list(self) -> List[ServiceListing]:
        """All services with their live status, in name order."""
        units = set(self.supervisor.units())
        return [
            ServiceListing(
                record=record,
                status=UnitStatus.RUNNING if record.window_name in units else UnitStatus.ABSENT,
            )
            for record in self.registry.list()
        ]

    def host_summary(self) -> HostSummary:
        """Describe the shared tmux session."""
        exists = self.supervisor.host_exists()
        return HostSummary(
            session_name=self.supervisor.session_name,
            exists=exists,
            units=self.supervisor.units() if exists else [],
            attach_command=self.supervisor.attach_command(),
        )


def get_service_manager(settings: Optional[Settings] = None) -> ServiceManager:
    """Get a service manager wired to udocker and tmux.

    Args:
        settings: Optional settings, defaults to the cached environment settings

    Returns:
        ServiceManager instance
    """
    settings = settings or get_settings()
    registry = ServiceRegistry(settings.services_dir, settings.data_dir)
    allocator = PortAllocator(registry, range_start=settings.port_range_start)
    engine = UdockerEngine(
        binary=settings.udocker_bin,
        loglevel=settings.udocker_loglevel,
        workdir=settings.run_workdir,
        command_timeout=settings.command_timeout,
        pull_timeout=settings.pull_timeout,
    )
    host = TmuxHost(binary=settings.tmux_bin, timeout=settings.command_timeout)
    supervisor = SessionSupervisor(host, session_name=settings.session_name)
    return ServiceManager(settings, registry, allocator, engine, supervisor)


__all__ = ["ServiceManager", "get_service_manager"]
