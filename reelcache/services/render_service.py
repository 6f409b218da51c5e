"""Bounded parallel execution of planned renders."""

from __future__ import annotations

import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence

from ..cache import utc_now
from ..config import Config
from ..errors import OperationCancelled
from ..render_state import RenderState
from ..runner import CancelToken
from ..utils import ensure_positive
from .change_service import Reason, Segment, SegmentAction, global_config_hash

logger = logging.getLogger(__name__)

Renderer = Callable[[Segment], object]


@dataclass(slots=True)
class RenderOutcome:
    segment: Segment
    reason: Reason
    rendered: bool = False
    skipped: bool = False
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and (self.rendered or self.skipped)


def default_worker_count() -> int:
    return os.cpu_count() or 1


def render_batch(
    actions: Sequence[SegmentAction],
    renderer: Renderer,
    state: RenderState,
    *,
    config: Config,
    template: str | None = None,
    max_workers: int | None = None,
    cancel: CancelToken | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> list[RenderOutcome]:
    """Run every render action and record the successes in *state*.

    Each worker performs one render at a time. Outcomes come back sorted by
    segment index. The global config hash is only stored when every planned
    render succeeded, so a partly failed batch is retried in full next time
    the configuration differs. The caller saves *state*.
    """

    outcomes: list[RenderOutcome] = [
        RenderOutcome(segment=action.segment, reason=action.reason, skipped=True)
        for action in actions
        if not action.needs_render
    ]
    pending = [action for action in actions if action.needs_render]
    if max_workers is not None:
        ensure_positive(max_workers, "max_workers")
    workers = max(1, min(max_workers or default_worker_count(), len(pending) or 1))

    cancelled = False
    if pending:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures: dict[Future, SegmentAction] = {}
            for action in pending:
                if cancel is not None and cancel.cancelled:
                    cancelled = True
                    break
                futures[executor.submit(renderer, action.segment)] = action
            for future in as_completed(futures):
                action = futures[future]
                if future.cancelled():
                    continue
                try:
                    future.result()
                except Exception as exc:  # renderer failures are reported per segment
                    logger.warning("render %03d failed: %s", action.segment.index, exc)
                    outcomes.append(RenderOutcome(action.segment, action.reason, error=exc))
                    continue
                outcomes.append(RenderOutcome(action.segment, action.reason, rendered=True))
                if cancel is not None and cancel.cancelled:
                    cancelled = True
                    for other in futures:
                        other.cancel()

    finished = {id(outcome.segment) for outcome in outcomes}
    for action in pending:
        if id(action.segment) not in finished:
            outcomes.append(
                RenderOutcome(
                    action.segment,
                    action.reason,
                    error=OperationCancelled("render cancelled"),
                )
            )

    outcomes.sort(key=lambda outcome: outcome.segment.index)
    rendered_at = clock()
    failures = 0
    for outcome in outcomes:
        if outcome.rendered:
            state.record(outcome.segment, template, rendered_at)
        elif not outcome.skipped:
            failures += 1
    if not cancelled and failures == 0:
        state.global_config_hash = global_config_hash(config)
    return outcomes
