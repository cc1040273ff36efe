# -*- coding: utf-8 -*-

"""Throttled, template-driven progress reporting for running tasks."""

import math
import time
from typing import Callable, Dict, Optional

from rich.console import Console
from rich.text import Text

from .config import DEFAULT_RENDER_THROTTLE_MS
from .events import ProgressEvent

_wrap_console = Console(width=80)


def _now_ms() -> float:
    return time.monotonic() * 1000


def wrap_token(value, width: int, hard: bool = False) -> str:
    """
    Wrap a token value to ``width`` columns.

    Words longer than the width are only split when ``hard`` is set.
    ANSI styling in the value is stripped so it does not count towards the width;
    whitespace and embedded newlines are kept.
    """
    # overflow goes on the Text: wrap(overflow="ignore") would turn wrapping off
    text = Text.from_ansi(str(value), overflow="fold" if hard else "ignore")
    lines = text.wrap(_wrap_console, width)
    return "\n".join(line.plain for line in lines)


class ProgressBar:
    """
    Progress reporter rendering a format string such as
    ``":bar :percent :current/:total eta :etas"``.

    Every rendered string that differs from the previous one is handed to
    ``emit`` as a ProgressEvent. Renders are throttled to one per
    ``render_throttle`` milliseconds unless forced.
    """

    def __init__(self, fmt: str, total: int, emit: Optional[Callable] = None, curr: int = 0,
                 width: Optional[int] = None, columns: int = 80, complete: str = "=", incomplete: str = "-",
                 head: Optional[str] = None, render_throttle: int = DEFAULT_RENDER_THROTTLE_MS,
                 callback: Optional[Callable] = None, clear: bool = False, hard_wrap: bool = False,
                 clock: Optional[Callable[[], float]] = None):
        if not isinstance(fmt, str):
            raise TypeError("format required")
        if not isinstance(total, int) or total < 0:
            raise ValueError("total must be a non-negative integer")
        self.fmt = fmt
        self.total = total
        self.curr = curr
        self.emit = emit or (lambda event: None)
        self.columns = columns
        self.width = width if width is not None else max(10, columns - 40)
        self.chars = {"complete": complete, "incomplete": incomplete, "head": head or complete}
        self.render_throttle = render_throttle
        self.callback = callback or (lambda bar: None)
        self.clear = clear
        self.hard_wrap = hard_wrap
        self._clock = clock or _now_ms
        self.tokens: Dict[str, object] = {}
        self.complete = False
        self.start = self._clock()
        self.last_render = -math.inf
        self.last_draw = ""

    def tick(self, amount: int = 1, tokens: Optional[dict] = None):
        if tokens is not None:
            self.tokens = tokens
        if self.complete:
            return
        self.curr += amount
        if self.curr == 0:
            self.start = self._clock()

        self.render()

        if self.curr >= self.total:
            self.render(force=True)
            self.complete = True
            self.terminate()
            self.callback(self)

    def update(self, ratio: float, tokens: Optional[dict] = None):
        goal = math.floor(ratio * self.total)
        self.tick(goal - self.curr, tokens)

    def stats(self, now: Optional[float] = None) -> dict:
        """Counters derived from the current state; times are in seconds."""
        now = self._clock() if now is None else now
        ratio = self.curr / self.total if self.total else 1.0
        ratio = min(max(ratio, 0.0), 1.0)
        percent = math.floor(ratio * 100)
        elapsed = max(now - self.start, 0.0)
        if percent == 100 or self.curr <= 0:
            eta = 0.0
        else:
            eta = elapsed / self.curr * (self.total - self.curr)
        if math.isnan(eta) or math.isinf(eta):
            eta = 0.0
        rate = self.curr / (elapsed / 1000) if elapsed > 0 else 0.0
        return {
            "ratio": ratio,
            "percent": percent,
            "elapsed": elapsed / 1000,
            "eta": eta / 1000,
            "rate": rate,
        }

    def render(self, force: bool = False, tokens: Optional[dict] = None):
        if tokens is not None:
            self.tokens = tokens

        now = self._clock()
        if not force and now - self.last_render < self.render_throttle:
            return
        self.last_render = now

        stats = self.stats(now)
        line = (
            self.fmt
            .replace(":current", str(self.curr))
            .replace(":total", str(self.total))
            .replace(":elapsed", f"{stats['elapsed']:.1f}")
            .replace(":eta", f"{stats['eta']:.1f}")
            .replace(":percent", f"{stats['percent']}%")
            .replace(":rate", str(round(stats["rate"])))
        )

        # room left on the line for the bar itself
        available = max(0, self.columns - len(line.replace(":bar", "")))
        width = min(self.width, available)
        complete_len = round(width * stats["ratio"])
        complete = self.chars["complete"] * complete_len
        incomplete = self.chars["incomplete"] * (width - complete_len)
        if complete_len > 0:
            complete = complete[:-1] + self.chars["head"]
        line = line.replace(":bar", complete + incomplete)

        for key, value in self.tokens.items():
            line = line.replace(f":{key}", wrap_token(value, self.columns, hard=self.hard_wrap))

        if line != self.last_draw:
            self.last_draw = line
            self.emit(ProgressEvent(
                current=self.curr,
                total=self.total,
                percent=stats["percent"],
                eta=stats["eta"],
                rate=stats["rate"],
                message=line,
                elapsed=stats["elapsed"],
            ))

    def interrupt(self, message: str):
        """Emit a one-off message line without disturbing the counters."""
        stats = self.stats()
        self.emit(ProgressEvent(
            current=self.curr,
            total=self.total,
            percent=stats["percent"],
            eta=stats["eta"],
            rate=stats["rate"],
            message=message,
            elapsed=stats["elapsed"],
        ))

    def terminate(self):
        if self.clear and self.last_draw:
            self.last_draw = ""
            self.interrupt("")
