"""
Sync engine -- one authenticated, encrypted exchange with a trusted peer.

A pass, as the initiating device sees it:

    read local state -> signed snapshot -> seal -> transport.exchange
    -> verify reply -> detect conflicts
       conflicts:    report them, write nothing
       no conflicts: merge, persist, then push a commit to the peer

The responder (``handle_request``) answers a sync with its own signed
snapshot and applies commits only when they introduce no new conflict.

Concurrency: one pass per peer at a time (per-peer lock), and one
writer to local storage at a time (write lock around re-read, merge,
persist). Transport exchanges and storage reads run on separate
engine-owned pools so they can be time-boxed; any timeout is a
TransportFailure(timeout) and mutates nothing.

Sync state:
    ~/.vaultsync/sync/state.json
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from . import PROTOCOL_VERSION
from . import envelope
from .audit import audit_event
from .config import VaultConfig
from .crypto import LinkKeys
from .errors import (
    NotFound,
    SignatureInvalid,
    StorageUnavailable,
    TransportFailure,
    VaultSyncError,
    error_from_code,
)
from .fileio import atomic_write_text
from .keys import KeyManager
from .merge import (
    Resolutions,
    apply_resolution,
    detect_conflicts,
    merge_states,
    modified_at,
    resolution_for,
)
from .models import (
    LocalState,
    Resolution,
    SyncHistoryEntry,
    SyncOutcome,
    SyncSnapshot,
    SyncState,
    TrustedPeer,
    VaultRecord,
    utcnow,
)
from .storage import StorageAdapter
from .transport import Transport
from .trust import TrustStore

logger = logging.getLogger("vaultsync.engine")

IO_WORKERS = 4


class _WorkerPool:
    """Thread pool for time-boxed adapter calls.

    A call that times out keeps running on its worker; it cannot be
    interrupted. Once every worker is held by such an abandoned call the
    pool is retired and replaced, so hung adapters never starve later
    calls. Retired workers exit when their call finally returns.
    """

    def __init__(self, name: str, workers: int = IO_WORKERS) -> None:
        self._name = name
        self._workers = workers
        self._lock = threading.Lock()
        self._generation = 0
        self._abandoned = 0
        self._executor = self._spawn()

    def _spawn(self) -> ThreadPoolExecutor:
        self._generation += 1
        return ThreadPoolExecutor(
            max_workers=self._workers,
            thread_name_prefix=f"vaultsync-{self._name}-{self._generation}",
        )

    @property
    def generation(self) -> int:
        return self._generation

    def run(self, fn: Callable[[], Any], timeout: float) -> Any:
        """Run ``fn`` and wait at most ``timeout`` seconds.

        Raises:
            concurrent.futures.TimeoutError: The call did not finish in time.
        """
        with self._lock:
            executor = self._executor
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            if not future.cancel():
                self._abandon(executor, future)
            raise

    def _abandon(self, executor: ThreadPoolExecutor, future: Future) -> None:
        with self._lock:
            if executor is not self._executor:
                return
            self._abandoned += 1
            retire = self._abandoned >= self._workers
            if retire:
                self._executor = self._spawn()
                self._abandoned = 0

        if retire:
            logger.warning("All %s workers hung, starting a fresh pool", self._name)
            executor.shutdown(wait=False)
        else:
            future.add_done_callback(lambda _: self._release(executor))

    def _release(self, executor: ThreadPoolExecutor) -> None:
        with self._lock:
            if executor is self._executor and self._abandoned:
                self._abandoned -= 1

    def shutdown(self) -> None:
        with self._lock:
            executor = self._executor
        executor.shutdown(wait=False, cancel_futures=True)


class SyncEngine:
    """Runs sync passes as initiator and answers them as responder.

    Args:
        home: Vault home directory.
        keys: Key manager (device identity).
        trust: Trust store (peer lookup, wire keys, last_seen).
        storage: Local vault state.
        transport: Channel to peers.
        config: Timeouts and history size.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        home: Path,
        keys: KeyManager,
        trust: TrustStore,
        storage: StorageAdapter,
        transport: Transport,
        config: Optional[VaultConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.home = home
        self._keys = keys
        self._trust = trust
        self._storage = storage
        self._transport = transport
        self._config = config or VaultConfig()
        self._clock = clock

        self._storage_pool = _WorkerPool("storage")
        self._transport_pool = _WorkerPool("transport")
        self._peer_locks: dict[str, threading.Lock] = {}
        self._peer_locks_guard = threading.Lock()
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()

        self._state_file = home / "sync" / "state.json"
        self.state = self._load_state()

    @property
    def device_id(self) -> str:
        return self._keys.get_device_identity().device_id

    # ------------------------------------------------------------------
    # Initiator
    # ------------------------------------------------------------------

    def sync_with_peer(self, peer_id: str, timeout: Optional[float] = None) -> SyncOutcome:
        """Run one sync pass with a trusted peer.

        Args:
            peer_id: Device id of the peer.
            timeout: Overrides the configured transport and storage timeouts.

        Returns:
            SyncOutcome. ``success=False`` with conflicts means nothing
            was written and the caller must decide them.

        Raises:
            UntrustedPeer: The peer is unknown or revoked.
            StorageUnavailable: Local state could not be read or written.
            TransportFailure: The exchange failed, or an exchange or
                storage read timed out.
            SignatureInvalid: The reply failed verification.
        """
        peer_name = peer_id
        try:
            with self._peer_lock(peer_id):
                peer = self._trust.require_trusted(peer_id)
                peer_name = peer.name
                keys = self._trust.link_keys(peer_id)

                local = self._read_state(timeout)
                snapshot = SyncSnapshot.from_state(local, self.device_id)
                payload = envelope.seal_snapshot(envelope.SYNC, snapshot, keys)

                logger.info("Syncing with %s (%s)", peer.name, peer_id)
                raw = self._exchange(peer_id, payload, timeout)
                reply = self._expect(raw, peer_id, envelope.REPLY)
                remote = envelope.open_snapshot(reply, keys)

                outcome = self._finish(peer, keys, remote, None, timeout)
        except VaultSyncError as exc:
            self._record_failure(peer_id, peer_name, exc)
            raise

        self._record_outcome(peer_name, outcome)
        return outcome

    def resolve_conflicts(
        self,
        outcome: SyncOutcome,
        resolutions: Resolutions,
        timeout: Optional[float] = None,
    ) -> SyncOutcome:
        """Finish a pass that stopped on conflicts.

        Args:
            outcome: The conflicted outcome from ``sync_with_peer``.
            resolutions: One Resolution for every conflict, or a mapping
                from conflict key ("file:f1") or entity id to Resolution.

        Returns:
            A new SyncOutcome. Conflicts still undecided keep the pass
            unsuccessful and nothing is written.
        """
        if outcome.success:
            return outcome
        if outcome.remote_snapshot is None:
            raise NotFound(f"No pending sync pass with {outcome.peer_id} to resolve")

        peer_id = outcome.peer_id
        peer_name = peer_id
        try:
            with self._peer_lock(peer_id):
                peer = self._trust.require_trusted(peer_id)
                peer_name = peer.name
                keys = self._trust.link_keys(peer_id)
                result = self._finish(peer, keys, outcome.remote_snapshot, resolutions, timeout)
        except VaultSyncError as exc:
            self._record_failure(peer_id, peer_name, exc)
            raise

        self._record_outcome(peer_name, result)
        return result

    def ping_peer(self, peer_id: str, timeout: Optional[float] = None) -> dict[str, Any]:
        """Unauthenticated reachability check. Returns the peer's pong body."""
        info = self._keys.device_info()
        payload = envelope.plain(
            envelope.PING,
            self.device_id,
            {"name": info.name, "device_class": info.device_class.value, "protocol": PROTOCOL_VERSION},
        )
        raw = self._exchange(peer_id, payload, timeout)
        reply = self._expect(raw, peer_id, envelope.PONG)
        return envelope.plain_body(reply)

    def _finish(
        self,
        peer: TrustedPeer,
        keys: LinkKeys,
        remote: SyncSnapshot,
        resolutions: Optional[Resolutions],
        timeout: Optional[float],
    ) -> SyncOutcome:
        remote_state = remote.to_state()
        with self._write_lock:
            local = self._read_state(timeout)
            conflicts = detect_conflicts(local, remote_state)

            chosen: dict[str, VaultRecord] = {}
            resolved: dict[str, datetime] = {}
            pending = []
            for conflict in conflicts:
                decision = resolution_for(conflict, resolutions) if resolutions is not None else None
                if decision is None:
                    pending.append(conflict)
                    continue
                conflict.resolution = decision
                chosen[conflict.key] = apply_resolution(conflict, decision)
                resolved[conflict.key] = modified_at(conflict.remote_version)

            if pending:
                logger.info("Sync with %s stopped on %d conflict(s)", peer.device_id, len(pending))
                return SyncOutcome(
                    success=False,
                    peer_id=peer.device_id,
                    conflicts=conflicts,
                    message=f"{len(pending)} conflict(s) need a decision",
                    remote_snapshot=remote,
                )

            merged = merge_states(local, remote_state, chosen)
            self._write_state(merged)
            self._trust.update_last_seen(peer.device_id, self._clock())

        peer_applied = self._commit(peer.device_id, keys, merged, resolved, timeout)
        return SyncOutcome(
            success=True,
            peer_id=peer.device_id,
            conflicts=conflicts,
            peer_applied=peer_applied,
            merged_files=len(merged.files),
            message=f"Synced {len(merged.files)} file(s) with {peer.name}",
        )

    def _commit(
        self,
        peer_id: str,
        keys: LinkKeys,
        merged: LocalState,
        resolved: dict[str, datetime],
        timeout: Optional[float],
    ) -> bool:
        """Push the merged state to the peer. Failure leaves local state as is."""
        snapshot = SyncSnapshot.from_state(merged, self.device_id)
        try:
            raw = self._exchange(peer_id, envelope.seal_commit(snapshot, resolved, keys), timeout)
            ack = self._expect(raw, peer_id, envelope.ACK)
            body = json.loads(envelope.open_sealed(ack, keys))
        except (VaultSyncError, ValueError) as exc:
            logger.warning("Peer %s did not apply the merged state: %s", peer_id, exc)
            return False
        applied = bool(body.get("applied"))
        if not applied:
            logger.warning("Peer %s refused the merged state: %s", peer_id, body.get("reason", ""))
        return applied

    def _expect(self, raw: bytes, peer_id: str, kind: str) -> envelope.Envelope:
        """Parse a reply and check it is the expected kind from the expected device."""
        reply = envelope.parse(raw)
        if reply.sender != peer_id:
            raise SignatureInvalid(f"Reply came from {reply.sender}, expected {peer_id}")
        if reply.kind == envelope.ERROR:
            body = envelope.plain_body(reply)
            raise error_from_code(str(body.get("code", "")), f"Peer refused: {body.get('message', '')}")
        if reply.kind != kind:
            raise SignatureInvalid(f"Unexpected '{reply.kind}' reply from {peer_id}")
        return reply

    # ------------------------------------------------------------------
    # Responder
    # ------------------------------------------------------------------

    def handle_request(self, raw: bytes) -> bytes:
        """Answer one inbound envelope. Never raises; refusals are error envelopes."""
        try:
            request = envelope.parse(raw)
        except SignatureInvalid as exc:
            return self._refuse(None, exc)

        if request.kind == envelope.PING:
            info = self._keys.device_info()
            return envelope.plain(
                envelope.PONG,
                self.device_id,
                {
                    "device_id": self.device_id,
                    "name": info.name,
                    "device_class": info.device_class.value,
                    "protocol": PROTOCOL_VERSION,
                },
            )

        try:
            if request.kind == envelope.SYNC:
                return self._answer_sync(request)
            if request.kind == envelope.COMMIT:
                return self._answer_commit(request)
            raise SignatureInvalid(f"Unsupported request kind '{request.kind}'")
        except VaultSyncError as exc:
            return self._refuse(request.sender, exc)

    def _answer_sync(self, request: envelope.Envelope) -> bytes:
        self._trust.require_trusted(request.sender)
        keys = self._trust.link_keys(request.sender)
        envelope.open_snapshot(request, keys)

        local = self._read_state(None)
        own = SyncSnapshot.from_state(local, self.device_id)
        self._trust.update_last_seen(request.sender, self._clock())
        logger.info("Answered sync request from %s", request.sender)
        return envelope.seal_snapshot(envelope.REPLY, own, keys)

    def _answer_commit(self, request: envelope.Envelope) -> bytes:
        self._trust.require_trusted(request.sender)
        keys = self._trust.link_keys(request.sender)
        commit = envelope.open_commit(request, keys)
        incoming = commit.snapshot.to_state()

        with self._write_lock:
            local = self._read_state(None)
            chosen: dict[str, VaultRecord] = {}
            blocking = []
            for conflict in detect_conflicts(local, incoming):
                seen = commit.resolved.get(conflict.key)
                local_modified = modified_at(conflict.local_version)
                if seen is not None and seen == local_modified:
                    chosen[conflict.key] = apply_resolution(conflict, Resolution.REMOTE_WINS)
                else:
                    blocking.append(conflict.key)

            if blocking:
                reason = f"local changes since the pass: {', '.join(blocking)}"
                logger.warning("Refusing commit from %s: %s", request.sender, reason)
                body = {"applied": False, "reason": reason}
            else:
                self._write_state(merge_states(local, incoming, chosen))
                self._trust.update_last_seen(request.sender, self._clock())
                logger.info("Applied commit from %s", request.sender)
                body = {"applied": True}

        return envelope.seal(envelope.ACK, self.device_id, json.dumps(body).encode("utf-8"), keys)

    def _refuse(self, sender: Optional[str], exc: VaultSyncError) -> bytes:
        logger.warning("Rejected request from %s: %s", sender or "unknown", exc)
        audit_event(
            self.home,
            "REQUEST_REJECTED",
            f"Rejected request: {exc.code.value}",
            metadata={"device_id": sender},
        )
        return envelope.plain(
            envelope.ERROR,
            self.device_id,
            {"code": exc.code.value, "message": str(exc)},
        )

    # ------------------------------------------------------------------
    # Storage and transport, time-boxed
    # ------------------------------------------------------------------

    def _read_state(self, timeout: Optional[float]) -> LocalState:
        return self._bounded(
            self._storage_pool,
            self._storage.read_local_state,
            self._config.storage_timeout if timeout is None else timeout,
            StorageUnavailable,
            "storage read",
        )

    def _write_state(self, state: LocalState) -> None:
        # Writes run to completion; abandoning one mid-way could leave
        # the adapter in an unknown state.
        try:
            self._storage.write_local_state(state)
        except VaultSyncError:
            raise
        except Exception as exc:
            raise StorageUnavailable(f"Vault state not writable: {exc}") from exc

    def _exchange(self, peer_id: str, payload: bytes, timeout: Optional[float]) -> bytes:
        return self._bounded(
            self._transport_pool,
            lambda: self._transport.exchange(peer_id, payload),
            self._config.transport_timeout if timeout is None else timeout,
            TransportFailure,
            f"exchange with {peer_id}",
        )

    def _bounded(
        self,
        pool: _WorkerPool,
        fn: Callable[[], Any],
        timeout: float,
        error: type,
        what: str,
    ) -> Any:
        """Run an adapter call on ``pool``.

        Any timeout is a TransportFailure(timeout); other adapter errors
        are wrapped in ``error``.
        """
        try:
            return pool.run(fn, timeout)
        except FuturesTimeout as exc:
            raise TransportFailure(f"{what} timed out after {timeout}s", TransportFailure.TIMEOUT) from exc
        except VaultSyncError:
            raise
        except Exception as exc:
            raise error(f"{what} failed: {exc}") from exc

    def _peer_lock(self, peer_id: str) -> threading.Lock:
        with self._peer_locks_guard:
            lock = self._peer_locks.get(peer_id)
            if lock is None:
                lock = self._peer_locks[peer_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # History and status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        """Sync counters, recent history and peer count."""
        with self._state_lock:
            state = self.state.model_dump(mode="json")
        return {
            "device_id": self.device_id,
            "peers": len(self._trust.list_trusted_peers()),
            "state": state,
        }

    def history(self, limit: int = 0) -> list[SyncHistoryEntry]:
        with self._state_lock:
            entries = list(self.state.history)
        return entries[-limit:] if limit else entries

    def close(self) -> None:
        self._storage_pool.shutdown()
        self._transport_pool.shutdown()

    def _record_outcome(self, peer_name: str, outcome: SyncOutcome) -> None:
        if outcome.success:
            audit_event(
                self.home,
                "SYNC_OK",
                f"Synced with {peer_name}",
                metadata={"device_id": outcome.peer_id, "files": outcome.merged_files},
            )
        else:
            audit_event(
                self.home,
                "SYNC_CONFLICT",
                f"{len(outcome.conflicts)} conflict(s) with {peer_name}",
                metadata={"device_id": outcome.peer_id},
            )
        with self._state_lock:
            now = self._clock()
            if outcome.success:
                self.state.last_sync = now
                self.state.last_peer = outcome.peer_id
                self.state.sync_count += 1
            else:
                self.state.conflict_count += 1
            self._append_history(
                SyncHistoryEntry(
                    peer_id=outcome.peer_id,
                    peer_name=peer_name,
                    at=now,
                    status=outcome.status,
                    file_count=outcome.merged_files,
                    conflict_count=len(outcome.conflicts),
                )
            )
            self._save_state()

    def _record_failure(self, peer_id: str, peer_name: str, exc: VaultSyncError) -> None:
        logger.warning("Sync with %s failed: %s", peer_id, exc)
        audit_event(
            self.home,
            "SYNC_FAIL",
            f"Sync with {peer_name} failed: {exc.code.value}",
            metadata={"device_id": peer_id},
        )
        outcome = SyncOutcome(success=False, peer_id=peer_id, error=exc.code.value)
        with self._state_lock:
            self.state.failure_count += 1
            self.state.last_error = f"{exc.code.value}: {exc}"
            self._append_history(
                SyncHistoryEntry(peer_id=peer_id, peer_name=peer_name, at=self._clock(), status=outcome.status)
            )
            self._save_state()

    def _append_history(self, entry: SyncHistoryEntry) -> None:
        self.state.history.append(entry)
        limit = self._config.history_limit
        if len(self.state.history) > limit:
            self.state.history = self.state.history[-limit:] if limit else []

    def _load_state(self) -> SyncState:
        if self._state_file.exists():
            try:
                return SyncState.model_validate_json(self._state_file.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def _save_state(self) -> None:
        try:
            atomic_write_text(self._state_file, self.state.model_dump_json(indent=2))
        except OSError as exc:
            logger.warning("Failed to save sync state: %s", exc)
