from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("leadflow.pipeline")


@dataclass
class PipelineStep:
    """Step descriptor for the enrichment pipeline runner."""
    name: str
    fn: Callable[[object], None]
    skip_if: Optional[Callable[[object], bool]] = None
    always_run: bool = False


class PipelineRunner:
    """Ordered step runner for the deterministic enrichment pipeline."""

    def __init__(self, steps: List[PipelineStep]) -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of PipelineStep; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond PipelineStep definitions.
        Failure Modes: None; assumes valid callables in steps.
        If Removed: Enrichment steps are never executed.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: object) -> None:
        """Purpose: Execute steps in order with optional skip/always-run rules.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Invokes step functions that may mutate context.
        Dependencies: Depends on PipelineStep.fn and PipelineStep.skip_if semantics.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: enrich_summary produces nothing.
        Testing Notes: Verify skip_if and always_run logic with simple steps.
        """
        # Iterate steps and honor always_run/skip_if guards, timing each one.
        for step in self._steps:
            if not step.always_run and step.skip_if and step.skip_if(context):
                logger.debug("step=%s status=skipped", step.name)
                continue
            started = time.monotonic()
            step.fn(context)
            logger.info("step=%s status=success elapsed_ms=%d", step.name, (time.monotonic() - started) * 1000)
