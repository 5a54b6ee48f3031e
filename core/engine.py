"""Reconciliation engine.

One pass walks the manifest in declared order and settles each app in a
single terminal outcome:

    no ref                          -> skipped / no_ref
    present, constraint satisfied   -> ok / already_installed
    present, constraint unsatisfied -> ok / upgraded (standard driver)
                                       failed / manual_upgrade_needed (custom)
    absent                          -> ok / installed, or failed

Nothing is retried within a run. Re-running is the retry, and because
present apps are never touched, re-running is safe.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import EngineConfig
from .drift import compute_drift
from .drivers import DriverDispatch, driver_of
from .errors import DriverError, ErrorCode
from .events import EventEmitter, EventSink
from .manifest import hash_manifest
from .models import (
    ApplyCounts,
    ApplyResult,
    Driver,
    EngineState,
    InstallStatus,
    ItemStatus,
    LastApplied,
    LastVerify,
    Manifest,
    ObservedApp,
    Reason,
    RunItem,
    VerifyResult,
)
from .state import StateStore
from .versions import parse_constraint, satisfies

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# failures that leave the engine without any ground truth abort the run
FATAL_DRIVER_CODES = {ErrorCode.PACKAGE_LIST_FAILED}

_PROCESS_CODES = {ErrorCode.PROCESS_FAILED.value, ErrorCode.PROCESS_ERROR.value}


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class _RunContext:
    run_id: str
    timestamp: str
    manifest_hash: str
    emitter: EventEmitter


class ReconciliationEngine:
    """Drives apply, plan and verify passes over a manifest."""

    def __init__(
        self,
        config: EngineConfig,
        dispatch: DriverDispatch,
        store: StateStore,
        sink: EventSink | None = None,
        clock: Callable[[], datetime] | None = None,
        run_id_factory: Callable[[], str] | None = None,
    ):
        self.config = config
        self.dispatch = dispatch
        self.store = store
        self.sink = sink
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.run_id_factory = run_id_factory or (lambda: uuid.uuid4().hex)

    def _start(self, manifest: Manifest) -> _RunContext:
        run_id = self.run_id_factory()
        manifest_hash = hash_manifest(manifest.path) if manifest.path else ""
        return _RunContext(
            run_id=run_id,
            timestamp=format_timestamp(self.clock()),
            manifest_hash=manifest_hash,
            emitter=EventEmitter(self.sink, run_id),
        )

    def _query(self, entry, phase: str, ctx: _RunContext) -> InstallStatus | RunItem:
        """Ask the driver about an entry; per-item errors become a failed item."""
        try:
            return self.dispatch.is_installed(entry)
        except DriverError as e:
            if e.code in FATAL_DRIVER_CODES:
                ctx.emitter.error(phase, e.code.value, e.message)
                raise
            logger.warning("Cannot query %s: %s", entry.id, e.message)
            return RunItem(
                id=entry.id,
                driver=driver_of(entry).value,
                status=ItemStatus.FAILED,
                reason=e.code.value,
                message=e.message,
            )

    def plan(self, manifest: Manifest) -> ApplyResult:
        """Report what apply would do without executing anything."""
        return self.apply(manifest, dry_run=True)

    def apply(
        self, manifest: Manifest, dry_run: bool = False, skip_verify: bool = False
    ) -> ApplyResult:
        """Bring the machine in line with the manifest.

        Args:
            manifest: Desired state
            dry_run: Report planned actions only; no installs, no state write
            skip_verify: Do not run the verify pass after installing

        Returns:
            ApplyResult; success requires zero failed items and, when verify
            runs, zero missing apps and zero version mismatches

        Raises:
            StateError: if existing state is unreadable or cannot be written
            DriverError: if the installed-software list cannot be obtained
        """
        ctx = self._start(manifest)
        # fail before touching the machine if the state file is corrupt
        existing = None if dry_run else self.store.read()

        counts = ApplyCounts(total=len(manifest.apps))
        ctx.emitter.phase("apply", "started", dryRun=dry_run, manifestPath=manifest.path)
        logger.info("Apply %s (%d apps, dry run: %s)", manifest.path, counts.total, dry_run)

        items: list[RunItem] = []
        self.dispatch.refresh()
        for entry in manifest.apps:
            item = self._apply_entry(entry, dry_run, counts, ctx)
            items.append(item)
            ctx.emitter.item("apply", item)

        verify_result = None
        observations: dict[str, ObservedApp] = {}
        if not dry_run and not skip_verify:
            self.dispatch.refresh()
            verify_result, observations = self._verify_pass(manifest, ctx)

        success = counts.failed == 0
        if verify_result is not None:
            success = success and verify_result.missing_count == 0 and verify_result.version_mismatches == 0

        result = ApplyResult(
            success=success,
            exit_code=EXIT_SUCCESS if success else EXIT_FAILURE,
            dry_run=dry_run,
            counts=counts,
            items=items,
            verify_result=verify_result,
            run_id=ctx.run_id,
            manifest_path=manifest.path,
            manifest_hash=ctx.manifest_hash,
            timestamp_utc=ctx.timestamp,
        )

        if not dry_run:
            state = existing or EngineState()
            state.last_applied = LastApplied(
                manifest_path=manifest.path,
                manifest_hash=ctx.manifest_hash,
                timestamp_utc=ctx.timestamp,
            )
            if verify_result is not None:
                state.last_verify = self._last_verify(verify_result)
                state.apps_observed.update(observations)
            self.store.write_atomic(state)

        ctx.emitter.summary("apply", result.counts.to_dict() | {"success": success})
        ctx.emitter.phase("apply", "completed", success=success)
        return result

    def _apply_entry(
        self, entry, dry_run: bool, counts: ApplyCounts, ctx: _RunContext
    ) -> RunItem:
        driver = driver_of(entry)
        ref = self.dispatch.installable_id(entry)
        if ref is None:
            counts.skipped_filtered += 1
            return RunItem(
                id=entry.id,
                driver=driver.value,
                status=ItemStatus.SKIPPED,
                reason=Reason.NO_REF.value,
                message=f"no installable ref for {self.config.platform}",
            )

        status = self._query(entry, "apply", ctx)
        if isinstance(status, RunItem):
            counts.failed += 1
            return status

        constraint = parse_constraint(entry.version)
        if status.installed:
            check = satisfies(status.version, constraint)
            if check.satisfied:
                counts.already_installed += 1
                return RunItem(
                    id=entry.id,
                    driver=driver.value,
                    status=ItemStatus.OK,
                    reason=Reason.ALREADY_INSTALLED.value,
                    message=check.reason,
                    version=status.version,
                )
            return self._upgrade(entry, ref, driver, status, check.reason, dry_run, counts)

        return self._install(entry, ref, driver, dry_run, counts)

    def _upgrade(self, entry, ref, driver, status, why, dry_run, counts) -> RunItem:
        if driver is Driver.CUSTOM:
            counts.failed += 1
            return RunItem(
                id=entry.id,
                driver=driver.value,
                status=ItemStatus.FAILED,
                reason=Reason.MANUAL_UPGRADE_NEEDED.value,
                message=f"{why}; custom installs are never patched in place",
                version=status.version,
            )

        if dry_run:
            counts.upgraded += 1
            return RunItem(
                id=entry.id,
                driver=driver.value,
                status=ItemStatus.OK,
                reason=Reason.WOULD_UPGRADE.value,
                message=f"would upgrade {ref}: {why}",
                version=status.version,
            )

        # The package is already present and usable, so a failed upgrade call
        # is recorded as upgraded with a warning rather than as a failure.
        result = self.dispatch.install(entry, is_upgrade=True)
        counts.upgraded += 1
        message = f"upgraded {ref}: {why}"
        if not result.success:
            logger.warning("Upgrade of %s reported failure: %s", ref, result.message)
            message = f"upgraded {ref} with warnings: {result.message}"
        return RunItem(
            id=entry.id,
            driver=driver.value,
            status=ItemStatus.OK,
            reason=Reason.UPGRADED.value,
            message=message,
            version=status.version,
        )

    def _install(self, entry, ref, driver, dry_run, counts) -> RunItem:
        try:
            result = self.dispatch.install(entry, dry_run=dry_run)
        except DriverError as e:
            counts.failed += 1
            return RunItem(
                id=entry.id,
                driver=driver.value,
                status=ItemStatus.FAILED,
                reason=e.code.value,
                message=e.message,
            )

        if result.success:
            counts.installed += 1
            return RunItem(
                id=entry.id,
                driver=driver.value,
                status=ItemStatus.OK,
                reason=(Reason.WOULD_INSTALL if dry_run else Reason.INSTALLED).value,
                message=result.message,
            )

        counts.failed += 1
        reason = result.error or Reason.INSTALL_FAILED.value
        if reason in _PROCESS_CODES:
            reason = Reason.INSTALL_FAILED.value
        logger.warning("Install of %s failed: %s", ref, result.message)
        return RunItem(
            id=entry.id,
            driver=driver.value,
            status=ItemStatus.FAILED,
            reason=reason,
            message=result.message,
        )

    def verify(self, manifest: Manifest, write_state: bool = True) -> VerifyResult:
        """Check the machine against the manifest without changing it.

        Args:
            manifest: Desired state
            write_state: Record the outcome in state

        Returns:
            VerifyResult; success means nothing missing and no version mismatches
        """
        ctx = self._start(manifest)
        existing = self.store.read() if write_state else None

        self.dispatch.refresh()
        result, observations = self._verify_pass(manifest, ctx)

        if write_state:
            state = existing or EngineState()
            state.last_verify = self._last_verify(result)
            state.apps_observed.update(observations)
            self.store.write_atomic(state)
        return result

    def _verify_pass(
        self, manifest: Manifest, ctx: _RunContext
    ) -> tuple[VerifyResult, dict[str, ObservedApp]]:
        ctx.emitter.phase("verify", "started", manifestPath=manifest.path)
        items: list[RunItem] = []
        observations: dict[str, ObservedApp] = {}
        observed_software: dict[str, str | None] = {}
        ok_count = 0
        missing: list[str] = []
        mismatched: list[str] = []

        def record(item: RunItem) -> None:
            items.append(item)
            ctx.emitter.item("verify", item)

        for entry in manifest.apps:
            driver = driver_of(entry)
            ref = self.dispatch.installable_id(entry)
            if ref is None:
                record(RunItem(
                    id=entry.id,
                    driver=driver.value,
                    status=ItemStatus.SKIPPED,
                    reason=Reason.NO_REF.value,
                    message=f"no installable ref for {self.config.platform}",
                ))
                continue

            status = self._query(entry, "verify", ctx)
            if isinstance(status, RunItem):
                # unverifiable counts as missing
                missing.append(entry.id)
                record(status)
                continue

            constraint = parse_constraint(entry.version)
            observed = ObservedApp(
                installed=status.installed,
                driver=driver.value,
                version=status.version,
                version_constraint=str(constraint) if constraint else None,
                last_seen_utc=ctx.timestamp,
            )

            if not status.installed:
                missing.append(entry.id)
                message = status.error or f"{ref} is not installed"
                record(RunItem(
                    id=entry.id,
                    driver=driver.value,
                    status=ItemStatus.FAILED,
                    reason=Reason.MISSING.value,
                    message=message,
                ))
            else:
                if driver is Driver.CUSTOM:
                    observed_software[ref] = status.version
                check = satisfies(status.version, constraint)
                observed.version_satisfied = check.satisfied
                if check.satisfied:
                    ok_count += 1
                    record(RunItem(
                        id=entry.id,
                        driver=driver.value,
                        status=ItemStatus.OK,
                        reason=Reason.ALREADY_INSTALLED.value,
                        message=check.reason,
                        version=status.version,
                    ))
                else:
                    mismatched.append(entry.id)
                    record(RunItem(
                        id=entry.id,
                        driver=driver.value,
                        status=ItemStatus.FAILED,
                        reason=Reason.VERSION_MISMATCH.value,
                        message=check.reason,
                        version=status.version,
                    ))
            observations[entry.id] = observed

        if self._uses_standard_driver(manifest):
            observed_software = {**self.dispatch.installed_software(), **observed_software}
        drift = compute_drift(manifest, observed_software, self.config.platform)

        success = not missing and not mismatched
        result = VerifyResult(
            success=success,
            exit_code=EXIT_SUCCESS if success else EXIT_FAILURE,
            ok_count=ok_count,
            missing_count=len(missing),
            version_mismatches=len(mismatched),
            extra_count=drift.extra_count,
            missing_apps=missing,
            version_mismatch_apps=mismatched,
            extra_apps=drift.extra,
            items=items,
            run_id=ctx.run_id,
            manifest_path=manifest.path,
            manifest_hash=ctx.manifest_hash,
            timestamp_utc=ctx.timestamp,
        )
        logger.info(
            "Verify %s: %d ok, %d missing, %d version mismatches, %d extra",
            manifest.path, ok_count, len(missing), len(mismatched), drift.extra_count,
        )
        ctx.emitter.summary("verify", {
            "okCount": ok_count,
            "missingCount": len(missing),
            "versionMismatches": len(mismatched),
            "extraCount": drift.extra_count,
            "success": success,
        })
        ctx.emitter.phase("verify", "completed", success=success)
        return result, observations

    def _uses_standard_driver(self, manifest: Manifest) -> bool:
        return any(
            driver_of(entry) is Driver.WINGET and self.dispatch.installable_id(entry)
            for entry in manifest.apps
        )

    @staticmethod
    def _last_verify(result: VerifyResult) -> LastVerify:
        return LastVerify(
            manifest_path=result.manifest_path,
            manifest_hash=result.manifest_hash,
            timestamp_utc=result.timestamp_utc,
            ok_count=result.ok_count,
            missing_count=result.missing_count,
            version_mismatch_count=result.version_mismatches,
            missing_apps=list(result.missing_apps),
            version_mismatch_apps=list(result.version_mismatch_apps),
            success=result.success,
        )
