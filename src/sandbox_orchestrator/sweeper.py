"""Expiry sweeper.

Deletes sandboxes whose Deployment is older than a threshold. Runs as a
background asyncio task in the service's FastAPI lifespan, and can also be
triggered on demand through the admin API with a shared auth token.
"""

from __future__ import annotations

import asyncio
import hmac
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog

from sandbox_orchestrator.errors import UnauthorizedError
from sandbox_orchestrator.identity import RULE_SEGMENT, NamingConvention
from sandbox_orchestrator.metrics import SANDBOXES_RECLAIMED

logger = structlog.get_logger(__name__)


def is_expired(
    created_at: Optional[datetime], now: datetime, threshold: timedelta
) -> bool:
    if created_at is None:
        return False
    return now - created_at >= threshold


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExpirySweeper:
    """Periodic and on-demand reclamation of expired sandboxes."""

    def __init__(self, orchestrator, settings):
        self.orchestrator = orchestrator
        self.settings = settings

    @property
    def threshold(self) -> timedelta:
        return timedelta(minutes=self.settings.sandbox_timeout_minutes)

    def _reclaim(
        self,
        deployments: List,
        threshold: timedelta,
        now: datetime,
        trigger: str,
    ) -> int:
        reclaimed = 0
        for deployment in deployments:
            created_at = deployment.metadata.creation_timestamp
            if not is_expired(created_at, now, threshold):
                continue

            user_id, rule = self.orchestrator.resolve_identity(deployment)
            if not user_id:
                logger.info(
                    "sweep_skipped_unresolvable",
                    deployment=deployment.metadata.name,
                    trigger=trigger,
                )
                continue

            age = now - created_at
            logger.info(
                "sweep_deleting_sandbox",
                user_id=user_id,
                age_seconds=int(age.total_seconds()),
                trigger=trigger,
            )
            # A second-segment match does not name a sandbox Deployment
            listed = deployment.metadata.name if rule != RULE_SEGMENT else None
            try:
                report = self.orchestrator.delete_sandbox(
                    user_id, deployment_name=listed
                )
            except Exception as e:
                # Continue with other sandboxes even if this one fails
                logger.error("sweep_delete_failed", user_id=user_id, error=str(e))
                continue

            if report.ok:
                reclaimed += 1
                SANDBOXES_RECLAIMED.labels(trigger=trigger).inc()
            else:
                logger.warning(
                    "sweep_delete_incomplete",
                    user_id=user_id,
                    failed_steps=report.failed,
                )
        return reclaimed

    def sweep_once(
        self, threshold: Optional[timedelta] = None, now: Optional[datetime] = None
    ) -> int:
        """One periodic tick over label-selected sandbox Deployments."""
        threshold = threshold if threshold is not None else self.threshold
        deployments = self.orchestrator.list_deployments(
            NamingConvention.sandbox_selector()
        )
        count = self._reclaim(deployments, threshold, now or _utcnow(), "periodic")
        if count:
            logger.info("sweep_completed", reclaimed=count, trigger="periodic")
        return count

    def sweep_on_demand(
        self,
        threshold: timedelta,
        auth_token: str,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Authenticated cleanup over every Deployment in the namespace.

        No label filter is applied so sandboxes created before labelling are
        found too; their user ID is recovered from the Deployment name.

        Raises:
            UnauthorizedError: auth_token does not match the configured token
            UpstreamError: Deployments could not be listed
        """
        expected = self.settings.cleanup_auth_token
        if not expected or not hmac.compare_digest(
            (auth_token or "").encode(), expected.encode()
        ):
            logger.warning("sweep_on_demand_unauthorized")
            raise UnauthorizedError()

        now = now or _utcnow()
        deployments = self.orchestrator.list_deployments()
        logger.info(
            "sweep_on_demand_started",
            namespace=self.orchestrator.namespace,
            deployments=len(deployments),
            threshold_seconds=int(threshold.total_seconds()),
        )
        count = self._reclaim(deployments, threshold, now, "on_demand")
        logger.info("sweep_completed", reclaimed=count, trigger="on_demand")
        return count

    async def run(
        self, stop_event: asyncio.Event, threshold: Optional[timedelta] = None
    ) -> None:
        """Sweep every interval until stop_event is set.

        threshold defaults to the configured sandbox timeout.
        """
        interval = self.settings.sweep_interval_seconds
        threshold = threshold if threshold is not None else self.threshold
        logger.info(
            "auto_cleanup_started",
            threshold_seconds=int(threshold.total_seconds()),
            interval_seconds=interval,
        )

        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                logger.info("auto_cleanup_cancelled")
                return

            try:
                await asyncio.to_thread(self.sweep_once, threshold)
            except asyncio.CancelledError:
                logger.info("auto_cleanup_cancelled")
                return
            except Exception as e:
                logger.error("auto_cleanup_tick_failed", error=str(e))

        logger.info("auto_cleanup_stopped")

    def start(
        self, stop_event: asyncio.Event, threshold: Optional[timedelta] = None
    ) -> asyncio.Task:
        """Start the periodic sweep as a background task."""
        return asyncio.create_task(self.run(stop_event, threshold))
