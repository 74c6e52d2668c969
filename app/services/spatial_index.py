"""
Nearmatch: In-memory Spatial Index

Grid index of user positions answering "who is within R metres of this
point" without scanning every user.

The globe is tiled into square cells of ``cell_size_deg`` degrees (snapped
so rows and columns tile exactly).  Each user lives in exactly one cell:

  _positions : user_id -> (coordinate, cell)
  _cells     : cell    -> {user_id, ...}

A query computes the latitude band and longitude span that can contain
points within the radius (see ``app.utils.geo.bounding_box``), visits only
those cells, measures the haversine distance to each resident and returns
the nearest ``limit`` hits ordered by ``(distance, user_id)``.

The two maps must always agree.  If a query meets a bucket entry whose
position record is missing or points at another cell it raises
``IndexCorruption`` for that cell; callers repair it with
``rebuild_cell`` from the authoritative user store.

Thread-safety: queries share a read lock, mutations take the write lock.
Lock waits are bounded and surface as ``OperationTimeout``.
"""

from __future__ import annotations

import heapq
import math
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Hashable, Iterable, Iterator, NamedTuple

import structlog

from app.errors import IndexCorruption, InvalidLimit, InvalidRadius, OperationTimeout
from app.utils.geo import Coordinate, bounding_box, haversine_m
from app.utils.rwlock import LockTimeout, ReadWriteLock

logger = structlog.get_logger("nearmatch.spatial_index")

Cell = tuple[int, int]


class IndexHit(NamedTuple):
    user_id: Any
    distance_m: float


@dataclass(frozen=True, slots=True)
class _Entry:
    coordinate: Coordinate
    cell: Cell


class SpatialIndex:
    """Lat/lon grid bucketing of user positions.

    User ids must be hashable and mutually orderable (ties in distance are
    broken by id).
    """

    def __init__(self, cell_size_deg: float = 0.05, lock_timeout: float | None = 2.0) -> None:
        if not 0.0 < cell_size_deg <= 10.0:
            raise ValueError(f"cell_size_deg must be in (0, 10], got {cell_size_deg}")
        self._rows = math.ceil(180.0 / cell_size_deg)
        self._cols = 2 * self._rows
        self.cell_size_deg = 180.0 / self._rows
        self._lock_timeout = lock_timeout

        self._positions: dict[Hashable, _Entry] = {}
        self._cells: dict[Cell, set[Hashable]] = {}
        self._lock = ReadWriteLock()

    # ── Locking ───────────────────────────────────────────────────────────

    @contextmanager
    def _reading(self) -> Iterator[None]:
        try:
            with self._lock.read_locked(self._lock_timeout):
                yield
        except LockTimeout as exc:
            raise OperationTimeout("Timed out waiting for the spatial index.") from exc

    @contextmanager
    def _writing(self) -> Iterator[None]:
        try:
            with self._lock.write_locked(self._lock_timeout):
                yield
        except LockTimeout as exc:
            raise OperationTimeout("Timed out waiting for the spatial index.") from exc

    # ── Geometry ──────────────────────────────────────────────────────────

    def cell_of(self, coordinate: Coordinate) -> Cell:
        row = min(int((coordinate.latitude + 90.0) // self.cell_size_deg), self._rows - 1)
        col = int((coordinate.longitude + 180.0) // self.cell_size_deg) % self._cols
        return row, col

    def cell_bounds(self, cell: Cell) -> tuple[float, float, float, float]:
        """Return ``(lat_min, lat_max, lon_min, lon_max)`` of a cell."""
        row, col = cell
        lat_min = row * self.cell_size_deg - 90.0
        lon_min = col * self.cell_size_deg - 180.0
        return (
            lat_min,
            min(lat_min + self.cell_size_deg, 90.0),
            lon_min,
            min(lon_min + self.cell_size_deg, 180.0),
        )

    def _candidate_cells(self, center: Coordinate, radius_m: float) -> list[Cell]:
        lat_min, lat_max, dlon = bounding_box(center, radius_m)
        # One cell of slack absorbs floating-point error at cell edges
        r0 = max(int((lat_min + 90.0) // self.cell_size_deg) - 1, 0)
        r1 = min(int((lat_max + 90.0) // self.cell_size_deg) + 1, self._rows - 1)

        if dlon is None:
            cols: set[int] | None = None
        else:
            lo = int((center.longitude - dlon + 180.0) // self.cell_size_deg) - 1
            hi = int((center.longitude + dlon + 180.0) // self.cell_size_deg) + 1
            cols = None if hi - lo + 1 >= self._cols else {c % self._cols for c in range(lo, hi + 1)}

        n_cols = self._cols if cols is None else len(cols)
        if (r1 - r0 + 1) * n_cols > len(self._cells):
            # Sparse index: filtering populated cells is cheaper than probing
            return [
                cell for cell in self._cells
                if r0 <= cell[0] <= r1 and (cols is None or cell[1] in cols)
            ]

        col_iter = range(self._cols) if cols is None else cols
        return [
            (row, col)
            for row in range(r0, r1 + 1)
            for col in col_iter
            if (row, col) in self._cells
        ]

    # ── Mutation ──────────────────────────────────────────────────────────

    def insert(self, user_id: Hashable, coordinate: Coordinate | tuple[float, float]) -> None:
        """Add a user or move them to a new position."""
        coordinate = Coordinate.of(coordinate)
        cell = self.cell_of(coordinate)
        with self._writing():
            self._place(user_id, coordinate, cell)

    def remove(self, user_id: Hashable) -> None:
        """Drop a user's position.  Removing an absent id is a no-op."""
        with self._writing():
            entry = self._positions.pop(user_id, None)
            if entry is not None:
                self._discard(user_id, entry.cell)

    def rebuild(self, entries: Iterable[tuple[Hashable, Coordinate | tuple[float, float]]]) -> int:
        """Replace the whole index.  Returns the number of users placed."""
        prepared = [(uid, Coordinate.of(coord)) for uid, coord in entries]
        with self._writing():
            self._positions.clear()
            self._cells.clear()
            for uid, coord in prepared:
                self._place(uid, coord, self.cell_of(coord))
            count = len(self._positions)
        logger.info("spatial_index_rebuilt", users=count, cells=len(self._cells))
        return count

    def rebuild_cell(
        self,
        cell: Cell,
        entries: Iterable[tuple[Hashable, Coordinate | tuple[float, float]]],
    ) -> int:
        """Replace one bucket from authoritative rows.

        Entries whose coordinate does not fall in ``cell`` are ignored, so
        callers may pass a slightly larger bounding-box result.
        """
        prepared = []
        for uid, coord in entries:
            coord = Coordinate.of(coord)
            if self.cell_of(coord) == cell:
                prepared.append((uid, coord))

        with self._writing():
            self._cells.pop(cell, None)
            stale = [uid for uid, entry in self._positions.items() if entry.cell == cell]
            for uid in stale:
                del self._positions[uid]
            for uid, coord in prepared:
                self._place(uid, coord, cell)

        logger.info("spatial_index_cell_rebuilt", cell=list(cell), users=len(prepared), dropped=len(stale))
        return len(prepared)

    def _place(self, user_id: Hashable, coordinate: Coordinate, cell: Cell) -> None:
        previous = self._positions.get(user_id)
        if previous is not None and previous.cell != cell:
            self._discard(user_id, previous.cell)
        self._positions[user_id] = _Entry(coordinate, cell)
        self._cells.setdefault(cell, set()).add(user_id)

    def _discard(self, user_id: Hashable, cell: Cell) -> None:
        bucket = self._cells.get(cell)
        if bucket is not None:
            bucket.discard(user_id)
            if not bucket:
                del self._cells[cell]

    # ── Queries ───────────────────────────────────────────────────────────

    def query(
        self,
        center: Coordinate | tuple[float, float],
        radius_m: float,
        limit: int | None = None,
    ) -> list[IndexHit]:
        """Return up to ``limit`` users within ``radius_m`` of ``center``,
        nearest first, ties broken by user id.  ``limit=None`` is unbounded.
        """
        center = Coordinate.of(center)
        if (
            isinstance(radius_m, bool)
            or not isinstance(radius_m, (int, float))
            or not math.isfinite(radius_m)
            or radius_m <= 0
        ):
            raise InvalidRadius(radius_m=radius_m)
        if limit is not None and limit < 1:
            raise InvalidLimit(limit=limit)

        hits: list[IndexHit] = []
        with self._reading():
            for cell in self._candidate_cells(center, radius_m):
                for uid in self._cells[cell]:
                    entry = self._positions.get(uid)
                    if entry is None or entry.cell != cell:
                        raise IndexCorruption(cell)
                    distance = haversine_m(center, entry.coordinate)
                    if distance <= radius_m:
                        hits.append(IndexHit(uid, distance))

        order = lambda hit: (hit.distance_m, hit.user_id)  # noqa: E731
        if limit is None or limit >= len(hits):
            return sorted(hits, key=order)
        return heapq.nsmallest(limit, hits, key=order)

    def position(self, user_id: Hashable) -> Coordinate | None:
        with self._reading():
            entry = self._positions.get(user_id)
        return entry.coordinate if entry is not None else None

    def verify(self) -> list[Cell]:
        """Return every cell whose bucket disagrees with the position map."""
        corrupted: set[Cell] = set()
        with self._reading():
            for cell, bucket in self._cells.items():
                for uid in bucket:
                    entry = self._positions.get(uid)
                    if entry is None or entry.cell != cell:
                        corrupted.add(cell)
            for uid, entry in self._positions.items():
                if uid not in self._cells.get(entry.cell, ()):
                    corrupted.add(entry.cell)
        return sorted(corrupted)

    def __len__(self) -> int:
        with self._reading():
            return len(self._positions)

    def __contains__(self, user_id: object) -> bool:
        with self._reading():
            return user_id in self._positions
