"""Visit confirmation gate: persisted debounce before a live visit is reported.

Every poll records an observation of a vehicle near its closest known
location. The visit duration is the time since the pair's earliest
observation in a trailing window, so short pass-throughs never reach the
minimum duration. Once it does, the caller creates the side effect and
calls ``confirm``; further polls within the confirmation window report
"already confirmed" instead of firing again. When a later poll no longer
sees the vehicle near the location, ``end_departed`` closes the visit.

State per (vehicle, location): no-visit -> pending -> confirmed -> ended.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Collection
from dataclasses import dataclass
from typing import Protocol

from dwell_track.models import ConfirmedVisit, GateState, Location, Observation, Vehicle
from dwell_track.store import GateStoreError, PairStatistics
from dwell_track.timeutils import round_minutes

logger = logging.getLogger(__name__)


class GateStore(Protocol):
    """Persistence the gate needs; see SqliteGateStore."""

    def add_observation(self, obs: Observation) -> None: ...

    def earliest_observation(self, vehicle_id: str, location_id: str, since: int) -> int | None: ...

    def prune_observations(self, older_than: int, max_rows: int) -> int: ...

    def pair_statistics(self, since: int) -> list[PairStatistics]: ...

    def recent_confirmed(self, vehicle_id: str, location_id: str, since: int) -> ConfirmedVisit | None: ...

    def open_visit(self, vehicle_id: str, location_id: str) -> ConfirmedVisit | None: ...

    def open_visits(self, vehicle_id: str) -> list[ConfirmedVisit]: ...

    def upsert_confirmed(
        self,
        vehicle_id: str,
        location_id: str,
        start_time: int,
        duration_minutes: int,
        side_effect_id: str | None,
    ) -> ConfirmedVisit: ...

    def close_visit(self, vehicle_id: str, location_id: str, end_time: int) -> ConfirmedVisit | None: ...


@dataclass(frozen=True, slots=True)
class GateParams:
    """Parameters controlling live visit confirmation."""

    minimum_visit_minutes: int = 5
    # Only observations this recent count toward the running visit duration.
    lookback_minutes: int = 120
    # A pair confirmed within this window is never fired again.
    confirm_window_hours: int = 24
    retention_hours: int = 24
    max_observations: int = 1000


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Outcome of one observation."""

    vehicle_id: str
    location_id: str
    state: GateState
    duration_minutes: int | None
    should_fire: bool
    already_confirmed: bool
    reason: str
    start_time: int | None = None


class VisitConfirmationGate:
    """Debounces live visits per (vehicle, location) pair over an injected store."""

    def __init__(self, store: GateStore, params: GateParams = GateParams()) -> None:
        self._store = store
        self.params = params
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _pair_lock(self, vehicle_id: str, location_id: str) -> threading.Lock:
        key = (vehicle_id, location_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def observe(self, vehicle: Vehicle, location: Location, lat: float, lon: float, now: int) -> GateDecision:
        """Record that ``vehicle`` is near ``location`` and evaluate the pair."""

        obs = Observation(
            vehicle_id=vehicle.id,
            vehicle_name=vehicle.name,
            location_id=location.id,
            location_name=location.name,
            vehicle_lat=lat,
            vehicle_lon=lon,
            location_lat=location.lat,
            location_lon=location.lon,
            distance_m=location.distance_m,
            observed_at=now,
        )
        with self._pair_lock(vehicle.id, location.id):
            try:
                self._store.add_observation(obs)
                first_seen = self._store.earliest_observation(
                    vehicle.id, location.id, now - self.params.lookback_minutes * 60
                )
                confirmed = self._store.recent_confirmed(
                    vehicle.id, location.id, now - self.params.confirm_window_hours * 3600
                )
            except GateStoreError as exc:
                logger.error("recording observation %s@%s failed: %s", vehicle.id, location.id, exc)
                return GateDecision(
                    vehicle_id=vehicle.id,
                    location_id=location.id,
                    state=GateState.PENDING,
                    duration_minutes=None,
                    should_fire=False,
                    already_confirmed=False,
                    reason="duration unknown (persistence error)",
                )

        start = first_seen if first_seen is not None else now
        duration = max(0, round_minutes(now - start))
        minimum = self.params.minimum_visit_minutes

        if confirmed is not None:
            return GateDecision(
                vehicle_id=vehicle.id,
                location_id=location.id,
                state=GateState.CONFIRMED,
                duration_minutes=duration,
                should_fire=False,
                already_confirmed=True,
                reason="already confirmed",
                start_time=start,
            )
        if duration >= minimum:
            return GateDecision(
                vehicle_id=vehicle.id,
                location_id=location.id,
                state=GateState.CONFIRMED,
                duration_minutes=duration,
                should_fire=True,
                already_confirmed=False,
                reason=f"dwell {duration} min >= minimum {minimum} min",
                start_time=start,
            )
        return GateDecision(
            vehicle_id=vehicle.id,
            location_id=location.id,
            state=GateState.PENDING,
            duration_minutes=duration,
            should_fire=False,
            already_confirmed=False,
            reason=f"dwell {duration} min < minimum {minimum} min, waiting {minimum - duration} min",
            start_time=start,
        )

    def confirm(self, vehicle_id: str, location_id: str, side_effect_id: str | None, now: int) -> bool:
        """Record that the side effect for the pair's visit was created.

        Returns:
            True if the visit was newly confirmed; False if it already was
            (no-op) or the store failed.
        """

        with self._pair_lock(vehicle_id, location_id):
            try:
                if self._store.recent_confirmed(
                    vehicle_id, location_id, now - self.params.confirm_window_hours * 3600
                ):
                    logger.info("visit %s@%s already confirmed", vehicle_id, location_id)
                    return False
                first_seen = self._store.earliest_observation(
                    vehicle_id, location_id, now - self.params.lookback_minutes * 60
                )
                start = first_seen if first_seen is not None else now
                self._store.upsert_confirmed(
                    vehicle_id, location_id, start, max(0, round_minutes(now - start)), side_effect_id
                )
            except GateStoreError as exc:
                logger.error("confirming visit %s@%s failed: %s", vehicle_id, location_id, exc)
                return False
        logger.info("visit confirmed: %s@%s (side effect %s)", vehicle_id, location_id, side_effect_id)
        return True

    def is_confirmed(self, vehicle_id: str, location_id: str, now: int) -> bool:
        try:
            visit = self._store.recent_confirmed(
                vehicle_id, location_id, now - self.params.confirm_window_hours * 3600
            )
        except GateStoreError as exc:
            logger.error("checking visit %s@%s failed: %s", vehicle_id, location_id, exc)
            return False
        return visit is not None

    def pair_state(self, vehicle_id: str, location_id: str, now: int) -> GateState:
        """Where the pair currently is in its visit lifecycle.

        An open confirmed visit is CONFIRMED; a confirmed visit that was
        closed within the confirmation window is ENDED. Otherwise the pair is
        PENDING (or already past the minimum, CONFIRMED) while it has
        observations in the lookback window, and NO_VISIT without them.

        Raises:
            GateStoreError: If the store fails.
        """

        with self._pair_lock(vehicle_id, location_id):
            if self._store.open_visit(vehicle_id, location_id) is not None:
                return GateState.CONFIRMED
            if self._store.recent_confirmed(
                vehicle_id, location_id, now - self.params.confirm_window_hours * 3600
            ):
                return GateState.ENDED
            first_seen = self._store.earliest_observation(
                vehicle_id, location_id, now - self.params.lookback_minutes * 60
            )
        if first_seen is None:
            return GateState.NO_VISIT
        if round_minutes(now - first_seen) >= self.params.minimum_visit_minutes:
            return GateState.CONFIRMED
        return GateState.PENDING

    def end_departed(self, vehicle_id: str, nearby_location_ids: Collection[str], now: int) -> list[ConfirmedVisit]:
        """Close the vehicle's open visits at locations it is no longer near.

        Returns:
            The visits that moved to the ended state.
        """

        try:
            open_visits = self._store.open_visits(vehicle_id)
        except GateStoreError as exc:
            logger.error("listing open visits of %s failed: %s", vehicle_id, exc)
            return []

        ended: list[ConfirmedVisit] = []
        for visit in open_visits:
            if visit.location_id in nearby_location_ids:
                continue
            with self._pair_lock(vehicle_id, visit.location_id):
                try:
                    closed = self._store.close_visit(vehicle_id, visit.location_id, now)
                except GateStoreError as exc:
                    logger.error("ending visit %s@%s failed: %s", vehicle_id, visit.location_id, exc)
                    continue
            if closed is not None:
                logger.info(
                    "visit ended: %s@%s after %s min", vehicle_id, visit.location_id, closed.duration_minutes
                )
                ended.append(closed)
        return ended

    def prune(self, now: int) -> int:
        """Drop expired observations and cap the table size."""

        try:
            deleted = self._store.prune_observations(
                now - self.params.retention_hours * 3600, self.params.max_observations
            )
        except GateStoreError as exc:
            logger.error("pruning observations failed: %s", exc)
            return 0
        if deleted:
            logger.debug("pruned %s observations", deleted)
        return deleted

    def statistics(self, now: int) -> list[PairStatistics]:
        """Per-pair observation summary over the lookback window."""

        return self._store.pair_statistics(now - self.params.lookback_minutes * 60)
