"""Timeline annotations for test runs: points, intervals and ongoing states."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Iterable, Sequence

COLOR_INFO = "#FAFAFA"
COLOR_NEUTRAL = "#FFECB3"
COLOR_SUCCESS = "#C8E6C9"
COLOR_FAILURE = "#FFCDD2"
COLOR_FAULT = "#B3E5FC"
COLOR_USER = "#FFF176"

TAG_CHECKER = "$ Checker"
TAG_PARTITION = "$ Failure"
TAG_INFO = "$ Test Info"


def timestamp() -> int:
    """Nanoseconds since the Unix epoch."""
    return time.time_ns()


@dataclass(frozen=True)
class Annotation:
    """One entry on the timeline; `end` is 0 for a point in time."""

    tag: str
    start: int
    description: str
    details: str
    background_color: str
    end: int = 0


@dataclass(frozen=True)
class _Continuous:
    start: int
    desp: str
    details: str
    bgcolor: str

    def until(self, tag: str, end: int) -> Annotation:
        return Annotation(tag, self.start, self.desp, self.details, self.bgcolor, end)


class Annotator:
    """Collects annotations; continuous ones stay open until replaced or ended."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._annotations: list[Annotation] = []
        self._continuous: dict[str, _Continuous] = {}
        self._finalized = False

    def annotate_point(self, tag: str, desp: str, details: str, bgcolor: str = COLOR_USER) -> None:
        with self._lock:
            self._annotations.append(Annotation(tag, timestamp(), desp, details, bgcolor))

    def annotate_interval(
        self, tag: str, start: int, desp: str, details: str, bgcolor: str = COLOR_USER
    ) -> None:
        """Record an interval from `start` until now."""
        with self._lock:
            self._annotations.append(
                Annotation(tag, start, desp, details, bgcolor, end=timestamp())
            )

    def annotate_continuous(
        self, tag: str, desp: str, details: str, bgcolor: str = COLOR_USER
    ) -> None:
        """Open an ongoing annotation for `tag`, closing any earlier one at this moment."""
        with self._lock:
            now = timestamp()
            prev = self._continuous.get(tag)
            if prev is not None:
                self._annotations.append(prev.until(tag, now))
            self._continuous[tag] = _Continuous(now, desp, details, bgcolor)

    def annotate_continuous_end(self, tag: str) -> None:
        """Close the ongoing annotation for `tag`, if there is one."""
        with self._lock:
            prev = self._continuous.pop(tag, None)
            if prev is not None:
                self._annotations.append(prev.until(tag, timestamp()))

    def finalize(self) -> list[Annotation]:
        """Return all annotations, open ones closed at now, and mark as finalized."""
        with self._lock:
            now = timestamp()
            result = list(self._annotations)
            result.extend(cont.until(tag, now) for tag, cont in self._continuous.items())
            self._finalized = True
            return result

    def finalize_with(self, end: str) -> list[Annotation]:
        """Finalize and append a closing info point described by `end`."""
        result = self.finalize()
        result.append(Annotation(TAG_INFO, timestamp(), end, end, COLOR_INFO))
        return result

    def clear(self) -> None:
        with self._lock:
            self._annotations = []
            self._continuous = {}
            self._finalized = False

    def is_finalized(self) -> bool:
        with self._lock:
            return self._finalized


def _go_list(items: Sequence[int]) -> str:
    return "[" + " ".join(str(i) for i in items) + "]"


class FailureTracker:
    """Tracks connectivity and crashes of a group's servers and annotates changes."""

    def __init__(self, annotator: Annotator, nservers: int) -> None:
        self._annotator = annotator
        self._lock = threading.Lock()
        self.nservers = nservers
        self._connected = [True] * nservers
        self._crashed = [False] * nservers
        self._checker_ts = 0
        self._checker_details = ""

    def _annotate_fault(self) -> None:
        if all(self._connected) and not any(self._crashed):
            self._annotator.annotate_continuous_end(TAG_PARTITION)
            return
        # Each disconnected server is its own partition; connected ones share one.
        conn: list[int] = []
        crashes: list[int] = []
        text = "partition = "
        for sid, connected in enumerate(self._connected):
            if self._crashed[sid]:
                crashes.append(sid)
            elif connected:
                conn.append(sid)
            else:
                text += f"[{sid}] "
        if conn:
            text += _go_list(conn)
        if crashes:
            text += f" / crash = {_go_list(crashes)}"
        self._annotator.annotate_continuous(TAG_PARTITION, text, text, COLOR_FAULT)

    def connection(self, connected: Iterable[bool]) -> None:
        """Record per-server connectivity; annotate only if it changed."""
        connected = list(connected)
        with self._lock:
            if connected == self._connected:
                return
            n = min(len(connected), self.nservers)
            self._connected[:n] = connected[:n]
            self._annotate_fault()

    def two_partitions(self, p1: Sequence[int], p2: Sequence[int]) -> None:
        text = f"partition = {_go_list(p1)} {_go_list(p2)}"
        self._annotator.annotate_continuous(TAG_PARTITION, text, text, COLOR_FAULT)

    def clear_failure(self) -> None:
        with self._lock:
            self._crashed = [False] * self.nservers
            self._connected = [True] * self.nservers
            self._annotator.annotate_continuous_end(TAG_PARTITION)

    def shutdown(self, servers: Iterable[int]) -> None:
        with self._lock:
            changed = False
            for sid in servers:
                if not self._crashed[sid]:
                    changed = True
                self._crashed[sid] = True
            if changed:
                self._annotate_fault()

    def shutdown_all(self) -> None:
        self.shutdown(range(self.nservers))

    def restart(self, servers: Iterable[int]) -> None:
        with self._lock:
            changed = False
            for sid in servers:
                if self._crashed[sid]:
                    changed = True
                self._crashed[sid] = False
            if changed:
                self._annotate_fault()

    def restart_all(self) -> None:
        self.restart(range(self.nservers))

    def checker_begin(self, details: str) -> None:
        with self._lock:
            self._checker_ts = timestamp()
            self._checker_details = details

    def checker_end(self, desp: str, details: str, color: str) -> None:
        """Annotate a checker result: an interval if begun, else a point."""
        with self._lock:
            if self._checker_ts == 0:
                self._annotator.annotate_point(TAG_CHECKER, desp, details, color)
                return
            d = f"{self._checker_details}: {details}"
            self._annotator.annotate_interval(TAG_CHECKER, self._checker_ts, desp, d, color)
            self._checker_ts = 0