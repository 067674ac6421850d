"""Progress parsing for FFmpeg output.

Two formats are understood:

- ``-progress pipe:1`` blocks on stdout: ``key=value`` lines terminated by
  ``progress=continue`` or ``progress=end``. Despite its name,
  ``out_time_ms`` carries microseconds.
- Status lines on stderr: ``frame=  120 fps= 60 ... time=00:00:04.00 ... speed=2.0x``

Lines that match neither format yield no update.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

TIME_PATTERN = re.compile(r"time=\s*(-?\d+:\d+:\d+(?:\.\d+)?)")
FPS_PATTERN = re.compile(r"fps=\s*([\d.]+)")
SPEED_PATTERN = re.compile(r"speed=\s*([\d.]+)x")
FRAME_PATTERN = re.compile(r"frame=\s*(\d+)")


def parse_timestamp(value: str) -> Optional[float]:
    """``HH:MM:SS.frac`` to seconds. None for malformed or negative values."""
    parts = value.strip().split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = int(parts[0]), int(parts[1]), float(parts[2])
    except ValueError:
        return None
    if hours < 0 or value.strip().startswith("-"):
        return None
    return hours * 3600 + minutes * 60 + seconds


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value.strip().rstrip("x"))
    except ValueError:
        return None


@dataclass
class ProgressUpdate:
    """Snapshot of an encoder's progress."""

    out_time: float
    percent: float
    fps: Optional[float] = None
    speed: Optional[float] = None
    frame: Optional[int] = None
    eta_s: Optional[float] = None
    finished: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "out_time": self.out_time,
            "percent": self.percent,
            "fps": self.fps,
            "speed": self.speed,
            "frame": self.frame,
            "eta_s": self.eta_s,
            "finished": self.finished,
        }


class ProgressParser:
    """Stateful parser fed one line at a time from either stream."""

    def __init__(self, total_duration: Optional[float] = None):
        self.total_duration = total_duration
        self._block: dict[str, str] = {}
        self.last: Optional[ProgressUpdate] = None

    def _make_update(
        self,
        out_time: float,
        fps: Optional[float],
        speed: Optional[float],
        frame: Optional[int],
        finished: bool = False,
    ) -> ProgressUpdate:
        out_time = max(0.0, out_time)
        percent = 0.0
        eta_s = None
        if self.total_duration and self.total_duration > 0:
            percent = min(100.0, max(0.0, out_time / self.total_duration * 100))
            if speed and speed > 0:
                eta_s = max(0.0, self.total_duration - out_time) / speed
        if finished:
            percent = 100.0
            eta_s = 0.0
        update = ProgressUpdate(
            out_time=out_time,
            percent=percent,
            fps=fps,
            speed=speed,
            frame=frame,
            eta_s=eta_s,
            finished=finished,
        )
        self.last = update
        return update

    def feed_stdout_line(self, line: str) -> Optional[ProgressUpdate]:
        """Accumulate a ``key=value`` line; emit an update at each block end."""
        line = line.strip()
        if "=" not in line:
            return None
        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if key != "progress":
            self._block[key] = value
            return None

        block, self._block = self._block, {}
        out_time = self._block_time(block)
        if out_time is None:
            out_time = self.last.out_time if self.last else 0.0
        frame = block.get("frame")
        return self._make_update(
            out_time,
            fps=_float_or_none(block.get("fps")),
            speed=_float_or_none(block.get("speed")),
            frame=int(frame) if frame and frame.isdigit() else None,
            finished=value == "end",
        )

    @staticmethod
    def _block_time(block: dict[str, str]) -> Optional[float]:
        for key in ("out_time_us", "out_time_ms"):
            raw = block.get(key)
            if raw and raw.lstrip("-").isdigit():
                return int(raw) / 1_000_000
        raw = block.get("out_time")
        if raw:
            return parse_timestamp(raw)
        return None

    def feed_stderr_line(self, line: str) -> Optional[ProgressUpdate]:
        """Parse an encoder status line. Other log lines are ignored."""
        time_match = TIME_PATTERN.search(line)
        if not time_match:
            return None
        out_time = parse_timestamp(time_match.group(1))
        if out_time is None:
            return None
        fps_match = FPS_PATTERN.search(line)
        speed_match = SPEED_PATTERN.search(line)
        frame_match = FRAME_PATTERN.search(line)
        return self._make_update(
            out_time,
            fps=float(fps_match.group(1)) if fps_match else None,
            speed=float(speed_match.group(1)) if speed_match else None,
            frame=int(frame_match.group(1)) if frame_match else None,
        )
