"""Cluster liveness check: submit one artifact, watch it propagate.

The acceptance signal for a bootstrapped testnet is not "every process is
up" but "the network delivers": a certificate-like artifact submitted at one
node must become observable at every target node (or a quorum of them)
before a deadline.

The check is one-shot. Its exit code is the signal consumed by CI: 0 pass,
1 fail. A failed check is never retried automatically.

Target lists come from a file path or a literal string, as a JSON array or
plain text separated by commas or newlines:

    TARGET_NODES_PATH=/tmp/shared/peer_nodes.json testnet check \\
        --submit-url http://boot:1340/artifacts --format json

Usage:
    transport = HttpArtifactTransport("http://boot:1340/artifacts")
    checker = ClusterLivenessChecker(transport, targets, deadline=60.0)
    report = await checker.run()       # raises LivenessCheckFailure
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import secrets
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import aiohttp

from testnet.config import defaults
from testnet.coordination.enums import ClusterEventType
from testnet.coordination.events import ClusterEvent, ClusterEventBus
from testnet.utils.exceptions import (
    FS_ERRORS,
    NETWORK_ERRORS,
    PARSE_ERRORS,
    ConfigError,
    LivenessCheckFailure,
)

logger = logging.getLogger(__name__)

TARGET_FORMATS = ("json", "plain")


# =============================================================================
# Target Lists
# =============================================================================


def parse_target_list(source: str | Path | None = None, fmt: str = "plain") -> list[str]:
    """Targets from a file path or a literal string.

    ``source`` defaults to the ``TARGET_NODES_PATH`` environment variable.
    ``json`` expects an array of strings; ``plain`` splits on commas and
    newlines and drops blank entries.

    Raises:
        ConfigError: no source, unreadable file, malformed content, empty list
    """
    if fmt not in TARGET_FORMATS:
        raise ConfigError(f"unknown target format {fmt!r} (expected one of {TARGET_FORMATS})")
    if source is None:
        source = os.environ.get(defaults.TARGET_NODES_ENV)
        if not source:
            raise ConfigError(f"no targets given and {defaults.TARGET_NODES_ENV} is not set")

    text = str(source)
    try:
        path = Path(text)
        if path.is_file():
            text = path.read_text()
    except FS_ERRORS as e:
        # Literal lists can be too long to be a valid path
        logger.debug(f"[LivenessChecker] Treating target source as literal: {e}")

    if fmt == "json":
        try:
            data = json.loads(text)
        except PARSE_ERRORS as e:
            raise ConfigError(f"target list is not valid JSON: {e}") from e
        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            raise ConfigError("JSON target list must be an array of strings")
        targets = [item.strip() for item in data if item.strip()]
    else:
        targets = [
            item.strip()
            for line in text.splitlines()
            for item in line.split(",")
            if item.strip()
        ]

    if not targets:
        raise ConfigError("target list is empty")
    return [target.rstrip("/") for target in targets]


# =============================================================================
# Artifact and Transport
# =============================================================================


@dataclass(frozen=True)
class Artifact:
    """Unique, content-addressed probe artifact."""

    artifact_id: str
    nonce: str
    created_at: float
    digest: str

    @classmethod
    def create(cls) -> Artifact:
        artifact_id = uuid.uuid4().hex
        nonce = secrets.token_hex(16)
        created_at = time.time()
        digest = hashlib.sha256(f"{artifact_id}:{nonce}:{created_at}".encode()).hexdigest()
        return cls(artifact_id, nonce, created_at, digest)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.artifact_id,
            "nonce": self.nonce,
            "created_at": self.created_at,
            "digest": self.digest,
        }


class ArtifactTransport(Protocol):
    async def submit(self, artifact: Artifact) -> None: ...

    async def is_propagated(self, target: str, artifact: Artifact) -> bool: ...


class HttpArtifactTransport:
    """POST the artifact to ``submit_url``; ``GET <target>/artifacts/<id>`` 200 means delivered."""

    def __init__(
        self,
        submit_url: str,
        request_timeout: float = defaults.LIVENESS_REQUEST_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
    ):
        self.submit_url = submit_url
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def submit(self, artifact: Artifact) -> None:
        session = self._get_session()
        async with session.post(self.submit_url, json=artifact.to_dict()) as resp:
            if resp.status >= 300:
                body = await resp.text()
                raise aiohttp.ClientResponseError(
                    resp.request_info,
                    resp.history,
                    status=resp.status,
                    message=body[:200] or resp.reason or "",
                )

    async def is_propagated(self, target: str, artifact: Artifact) -> bool:
        session = self._get_session()
        async with session.get(f"{target}/artifacts/{artifact.artifact_id}") as resp:
            return resp.status == 200

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> HttpArtifactTransport:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


# =============================================================================
# Checker
# =============================================================================


@dataclass
class LivenessReport:
    """Outcome of one liveness check."""

    artifact: Artifact
    targets: list[str]
    quorum: int
    confirmed: dict[str, float] = field(default_factory=dict)  # target -> seconds to confirm
    errors: dict[str, str] = field(default_factory=dict)  # last error per target
    submit_error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def passed(self) -> bool:
        return self.submit_error is None and len(self.confirmed) >= self.quorum

    @property
    def pending(self) -> list[str]:
        return [t for t in self.targets if t not in self.confirmed]

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def summary(self) -> str:
        if self.submit_error is not None:
            return f"artifact submission failed: {self.submit_error}"
        return (
            f"{len(self.confirmed)}/{len(self.targets)} targets confirmed "
            f"(quorum {self.quorum}) in {self.elapsed_seconds:.1f}s"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "artifact": self.artifact.to_dict(),
            "quorum": self.quorum,
            "confirmed": self.confirmed,
            "pending": self.pending,
            "errors": self.errors,
            "submit_error": self.submit_error,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class ClusterLivenessChecker:
    """Submits an artifact and polls targets until quorum or deadline."""

    def __init__(
        self,
        transport: ArtifactTransport,
        targets: list[str],
        deadline: float = defaults.LIVENESS_DEADLINE_SECONDS,
        poll_interval: float = defaults.LIVENESS_POLL_INTERVAL_SECONDS,
        quorum: int | None = None,
        bus: ClusterEventBus | None = None,
    ):
        if not targets:
            raise ConfigError("liveness check needs at least one target")
        if quorum is not None and not 1 <= quorum <= len(targets):
            raise ConfigError(f"quorum must be between 1 and {len(targets)} (got {quorum})")
        self.transport = transport
        self.targets = list(dict.fromkeys(targets))
        self.deadline = deadline
        self.poll_interval = poll_interval
        self.quorum = quorum if quorum is not None else len(self.targets)
        self._bus = bus

    async def check(self) -> LivenessReport:
        artifact = Artifact.create()
        report = LivenessReport(artifact=artifact, targets=self.targets, quorum=self.quorum)
        start = time.monotonic()
        logger.info(
            f"[LivenessChecker] Submitting artifact {artifact.artifact_id}; "
            f"waiting for {self.quorum}/{len(self.targets)} targets within {self.deadline}s"
        )

        try:
            await self.transport.submit(artifact)
        except (aiohttp.ClientError, *NETWORK_ERRORS) as e:
            report.submit_error = str(e) or type(e).__name__
            report.elapsed_seconds = time.monotonic() - start
            await self._publish(report)
            return report

        end = start + self.deadline
        while True:
            pending = report.pending
            results = await asyncio.gather(
                *(self._poll(target, artifact) for target in pending)
            )
            now = time.monotonic()
            for target, (confirmed, error) in zip(pending, results):
                if confirmed:
                    report.confirmed[target] = round(now - start, 3)
                    report.errors.pop(target, None)
                    logger.debug(f"[LivenessChecker] {target} confirmed after {now - start:.1f}s")
                elif error is not None:
                    report.errors[target] = error

            if len(report.confirmed) >= self.quorum or now >= end:
                break
            await asyncio.sleep(min(self.poll_interval, max(0.0, end - now)))

        report.elapsed_seconds = time.monotonic() - start
        await self._publish(report)
        return report

    async def run(self) -> LivenessReport:
        """``check()``, raising ``LivenessCheckFailure`` unless it passed."""
        report = await self.check()
        if not report.passed:
            raise LivenessCheckFailure(f"Liveness check failed: {report.summary()}", report=report)
        return report

    async def _poll(self, target: str, artifact: Artifact) -> tuple[bool, str | None]:
        try:
            return await self.transport.is_propagated(target, artifact), None
        except (aiohttp.ClientError, *NETWORK_ERRORS) as e:
            return False, str(e) or type(e).__name__

    async def _publish(self, report: LivenessReport) -> None:
        if report.passed:
            logger.info(f"[LivenessChecker] Passed: {report.summary()}")
        else:
            logger.error(
                f"[LivenessChecker] Failed: {report.summary()}; pending: {', '.join(report.pending)}"
            )
        if self._bus is not None:
            event_type = (
                ClusterEventType.LIVENESS_CHECK_PASSED
                if report.passed
                else ClusterEventType.LIVENESS_CHECK_FAILED
            )
            await self._bus.publish(ClusterEvent(event_type, report.to_dict()))
