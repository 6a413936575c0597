import threading
from typing import Any, Callable, Dict, List, Optional

from fpasync.fpasync_datatypes import CallState, Fingerprint, PendingCall
from fpasync.fpasync_outcome import AdapterFailure


class RegistryError(Exception):
    """A registry invariant was violated by the caller."""


class PendingCallRegistry:
    """
    Keyed store of external-call records for one top-level evaluation.

    At most one record exists per fingerprint and a record's state only moves
    forward (not-started -> in-flight -> completed). Records are never removed;
    the whole registry is dropped when the evaluation ends.
    """

    def __init__(self):
        self._records: Dict[Fingerprint, PendingCall] = {}
        self._lock = threading.Lock()
        self.introduced = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, fingerprint: Fingerprint) -> bool:
        return fingerprint in self._records

    def lookup(self, fingerprint: Fingerprint) -> Optional[PendingCall]:
        return self._records.get(fingerprint)

    def register_if_absent(self, fingerprint: Fingerprint, builder: Callable[[], PendingCall]) -> PendingCall:
        with self._lock:
            record = self._records.get(fingerprint)
            if record is not None:
                return record
            record = builder()
            if record.fingerprint != fingerprint:
                raise RegistryError(f"builder produced {record.fingerprint!r} for {fingerprint!r}")
            record.state = CallState.NOT_STARTED
            self._records[fingerprint] = record
            self.introduced += 1
            return record

    def mark_in_flight(self, fingerprint: Fingerprint) -> PendingCall:
        with self._lock:
            record = self._require(fingerprint)
            if record.state is not CallState.NOT_STARTED:
                raise RegistryError(f"{fingerprint!r} is already {record.state.value}")
            record.state = CallState.IN_FLIGHT
            return record

    def complete(self, fingerprint: Fingerprint, result: Any = None, failure: Optional[AdapterFailure] = None) -> PendingCall:
        with self._lock:
            record = self._require(fingerprint)
            if record.state is CallState.COMPLETED:
                # Same outcome twice is tolerated; anything else is a logic error.
                if record.failure is failure and record.result == result:
                    return record
                raise RegistryError(f"{fingerprint!r} was already completed with a different outcome")
            record.result = None if failure is not None else result
            record.failure = failure
            record.state = CallState.COMPLETED
            return record

    def pending_fingerprints(self) -> List[Fingerprint]:
        with self._lock:
            return [fp for fp, r in self._records.items() if r.state is CallState.NOT_STARTED]

    def failures(self) -> Dict[Fingerprint, AdapterFailure]:
        with self._lock:
            return {fp: r.failure for fp, r in self._records.items() if r.failure is not None}

    def completed_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.state is CallState.COMPLETED)

    def _require(self, fingerprint: Fingerprint) -> PendingCall:
        record = self._records.get(fingerprint)
        if record is None:
            raise RegistryError(f"unknown fingerprint {fingerprint!r}")
        return record
