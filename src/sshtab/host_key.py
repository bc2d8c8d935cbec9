"""
Host key decision protocol.

Provides:
- HostKeyDecision: ACCEPT_AND_STORE, ACCEPT_ONCE, REJECT
- NewHostKeyInfo / HostKeyChangedInfo: what the decider is shown
- DecisionRequest: single-fire request fulfilled from any thread
- HostKeyResolver, CallbackResolver, StaticResolver: decision sources
- HostKeyGate: verify, decide and remember for one presented key

A NEW_HOST or CHANGED outcome pauses the connect path until the resolver
fulfills the request or the wait times out. Every path without an explicit
accept ends in HostKeyRejected.
"""
from __future__ import annotations

import asyncio
import base64
import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

from sshtab.errors import HostKeyRejected
from sshtab.events import EventEmitter, EventType
from sshtab.trust import (
    TrustedHostKey,
    TrustStore,
    VerificationOutcome,
    detect_key_type,
    fingerprint_of,
)

logger = logging.getLogger(__name__)

DEFAULT_DECISION_TIMEOUT_SEC = 60.0


class HostKeyDecision(str, Enum):
    """Answer to a host key question."""
    ACCEPT_AND_STORE = "ACCEPT_AND_STORE"
    ACCEPT_ONCE = "ACCEPT_ONCE"
    REJECT = "REJECT"


@dataclass(frozen=True)
class NewHostKeyInfo:
    """A host with no stored key."""
    hostname: str
    port: int
    key_type: str
    fingerprint: str
    public_key: str


@dataclass(frozen=True)
class HostKeyChangedInfo:
    """A host whose presented key differs from the stored one."""
    hostname: str
    port: int
    old_key_type: str
    new_key_type: str
    old_fingerprint: str
    new_fingerprint: str
    old_public_key: str
    new_public_key: str
    first_seen: int
    last_verified: int

    def warning_message(self) -> str:
        """Render the change the way OpenSSH warns about it."""
        lines = [
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
            "@    WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!     @",
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
            "IT IS POSSIBLE THAT SOMEONE IS DOING SOMETHING NASTY!",
            "Someone could be eavesdropping on you right now (man-in-the-middle attack)!",
            f"The host key for {self.hostname}:{self.port} has changed.",
            "",
            f"Stored key ({self.old_key_type}):",
            f"  {self.old_fingerprint}",
            f"Presented key ({self.new_key_type}):",
            f"  {self.new_fingerprint}",
        ]
        if self.old_key_type != self.new_key_type:
            lines.append("The key type is different as well.")
        lines.extend([
            "",
            "Only accept the new key if the server's administrator confirms",
            "that it was replaced.",
        ])
        return "\n".join(lines)


DecisionInfo = Union[NewHostKeyInfo, HostKeyChangedInfo]


# ---------------------------------------------------------------------------
# Requests and resolvers
# ---------------------------------------------------------------------------

class DecisionRequest:
    """
    A pending host key question.

    fulfill() succeeds exactly once; any later call, or a call after the
    wait timed out, returns False. Safe to call from any thread.
    """

    def __init__(self, info: DecisionInfo) -> None:
        self.info = info
        self.future: concurrent.futures.Future[HostKeyDecision] = concurrent.futures.Future()
        self._lock = threading.Lock()

    @property
    def is_changed_key(self) -> bool:
        return isinstance(self.info, HostKeyChangedInfo)

    @property
    def done(self) -> bool:
        return self.future.done()

    def fulfill(self, decision: HostKeyDecision) -> bool:
        """Deliver the decision. Returns False if already settled."""
        assert isinstance(decision, HostKeyDecision), \
            f"Expected HostKeyDecision, got {decision!r}"
        with self._lock:
            if self.future.done():
                return False
            try:
                self.future.set_result(decision)
            except concurrent.futures.InvalidStateError:
                return False
            return True

    def cancel(self) -> None:
        with self._lock:
            self.future.cancel()


class HostKeyResolver:
    """
    Source of host key decisions.

    submit() must return promptly; the decision may be delivered later from
    any thread through request.fulfill().
    """

    def submit(self, request: DecisionRequest) -> None:
        raise NotImplementedError


class CallbackResolver(HostKeyResolver):
    """
    Runs blocking decision callbacks on a daemon thread.

    A missing callback, or one that raises, answers REJECT.
    """

    def __init__(
        self,
        on_new_host: Callable[[NewHostKeyInfo], HostKeyDecision] | None = None,
        on_changed_key: Callable[[HostKeyChangedInfo], HostKeyDecision] | None = None,
    ) -> None:
        self._on_new_host = on_new_host
        self._on_changed_key = on_changed_key

    def submit(self, request: DecisionRequest) -> None:
        thread = threading.Thread(
            target=self._run, args=(request,), name="host-key-decision", daemon=True,
        )
        thread.start()

    def _run(self, request: DecisionRequest) -> None:
        decision = HostKeyDecision.REJECT
        try:
            if isinstance(request.info, HostKeyChangedInfo):
                if self._on_changed_key is not None:
                    decision = self._on_changed_key(request.info)
            elif self._on_new_host is not None:
                decision = self._on_new_host(request.info)
        except Exception:
            logger.exception("Host key decision callback failed")
            decision = HostKeyDecision.REJECT
        if not isinstance(decision, HostKeyDecision):
            logger.warning("Host key callback returned %r, rejecting", decision)
            decision = HostKeyDecision.REJECT
        if not request.fulfill(decision):
            logger.info("Host key decision arrived after the request was settled")


class StaticResolver(HostKeyResolver):
    """Answers every request with the same decision (scripts and tests)."""

    def __init__(
        self,
        decision: HostKeyDecision,
        changed_decision: HostKeyDecision | None = None,
    ) -> None:
        self.decision = decision
        self.changed_decision = changed_decision or decision
        self.requests: list[DecisionRequest] = []

    def submit(self, request: DecisionRequest) -> None:
        self.requests.append(request)
        if request.is_changed_key:
            request.fulfill(self.changed_decision)
        else:
            request.fulfill(self.decision)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GateResult:
    """What the gate concluded for a presented key."""
    outcome: VerificationOutcome
    decision: HostKeyDecision | None
    fingerprint: str


class HostKeyGate:
    """
    Verify a presented key and obtain a decision for anything not trusted.

    Usage:
        gate = HostKeyGate(store, resolver)
        result = await gate.check("example.com", 22, key.public_data)
    """

    def __init__(
        self,
        trust_store: TrustStore,
        resolver: HostKeyResolver | None,
        timeout: float = DEFAULT_DECISION_TIMEOUT_SEC,
        emitter: EventEmitter | None = None,
    ) -> None:
        assert timeout > 0, f"Decision timeout must be positive, got {timeout}"
        self._store = trust_store
        self._resolver = resolver
        self._timeout = timeout
        self._emitter = emitter
        self._pending = 0
        self._pending_lock = threading.Lock()

    @property
    def trust_store(self) -> TrustStore:
        return self._store

    @property
    def awaiting_decision(self) -> bool:
        """True while a check is blocked on the resolver."""
        with self._pending_lock:
            return self._pending > 0

    async def check(self, hostname: str, port: int, key_bytes: bytes) -> GateResult:
        """
        Run verify, decide and remember for one key.

        Returns:
            GateResult for an accepted key

        Raises:
            HostKeyRejected: for INVALID keys and every non-accept decision
        """
        fingerprint = fingerprint_of(key_bytes)
        outcome = self._store.verify(hostname, port, key_bytes, fingerprint)

        if outcome == VerificationOutcome.ACCEPTED:
            self._emit(hostname, port, fingerprint, outcome, None)
            return GateResult(outcome, None, fingerprint)

        if outcome == VerificationOutcome.INVALID:
            self._emit(hostname, port, fingerprint, outcome, HostKeyDecision.REJECT)
            raise HostKeyRejected(
                f"Host key for {hostname}:{port} is malformed",
                hostname, port, fingerprint=fingerprint, outcome=outcome.value,
            )

        info = self._build_info(hostname, port, key_bytes, fingerprint, outcome)
        decision = await self._request_decision(info)
        self._emit(hostname, port, fingerprint, outcome, decision)

        if decision == HostKeyDecision.REJECT:
            raise HostKeyRejected(
                f"Host key for {hostname}:{port} was rejected ({outcome.value.lower()})",
                hostname, port, fingerprint=fingerprint, outcome=outcome.value,
            )

        if decision == HostKeyDecision.ACCEPT_AND_STORE:
            self._store.remember(TrustedHostKey.from_key_bytes(hostname, port, key_bytes))
            logger.info("Stored host key for %s:%d (%s)", hostname, port, fingerprint)

        return GateResult(outcome, decision, fingerprint)

    def _build_info(
        self,
        hostname: str,
        port: int,
        key_bytes: bytes,
        fingerprint: str,
        outcome: VerificationOutcome,
    ) -> DecisionInfo:
        public_key = base64.b64encode(key_bytes).decode("ascii")
        key_type = detect_key_type(key_bytes)

        if outcome == VerificationOutcome.NEW_HOST:
            return NewHostKeyInfo(hostname, port, key_type, fingerprint, public_key)

        existing = self._store.get(hostname, port)
        assert existing is not None, \
            f"CHANGED outcome for {hostname}:{port} without a stored record"
        return HostKeyChangedInfo(
            hostname=hostname,
            port=port,
            old_key_type=existing.key_type,
            new_key_type=key_type,
            old_fingerprint=existing.fingerprint,
            new_fingerprint=fingerprint,
            old_public_key=existing.public_key,
            new_public_key=public_key,
            first_seen=existing.first_seen,
            last_verified=existing.last_verified,
        )

    async def _request_decision(self, info: DecisionInfo) -> HostKeyDecision:
        if self._resolver is None:
            logger.warning(
                "No host key resolver for %s:%d, rejecting", info.hostname, info.port,
            )
            return HostKeyDecision.REJECT

        request = DecisionRequest(info)
        with self._pending_lock:
            self._pending += 1
        try:
            try:
                self._resolver.submit(request)
            except Exception:
                logger.exception("Host key resolver failed to accept the request")
                request.cancel()
                return HostKeyDecision.REJECT

            try:
                return await asyncio.wait_for(
                    asyncio.wrap_future(request.future), timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "No host key decision for %s:%d within %.0fs, rejecting",
                    info.hostname, info.port, self._timeout,
                )
                return HostKeyDecision.REJECT
        finally:
            request.cancel()
            with self._pending_lock:
                self._pending -= 1

    def _emit(
        self,
        hostname: str,
        port: int,
        fingerprint: str,
        outcome: VerificationOutcome,
        decision: HostKeyDecision | None,
    ) -> None:
        if self._emitter is None:
            return
        self._emitter.emit(
            EventType.HOST_KEY,
            host=hostname,
            port=port,
            fingerprint=fingerprint,
            outcome=outcome.value,
            decision=decision.value if decision else None,
        )
