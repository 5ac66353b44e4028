"""Assembles the ordered stage list of a device pipeline."""

from __future__ import annotations

from typing import List, Optional, Sequence

from hubclient.network.pool import ConnectionPool
from hubclient.pipeline.base import PipelineContext, PipelineStage
from hubclient.pipeline.error_handler import ErrorDelegatingHandler
from hubclient.pipeline.retry_handler import RetryDelegatingHandler
from hubclient.pipeline.transport_handler import TransportHandler
from hubclient.retry import RetryPolicy


class Pipeline:
    """Stages linked head to tail; callers only talk to ``head``."""

    def __init__(self, stages: Sequence[PipelineStage]) -> None:
        if not stages:
            raise ValueError("a pipeline needs at least one stage")
        self.stages: List[PipelineStage] = list(stages)
        for upper, lower in zip(self.stages, self.stages[1:]):
            upper.next = lower
        self.stages[-1].next = None

    @property
    def head(self) -> PipelineStage:
        return self.stages[0]

    @property
    def context(self) -> PipelineContext:
        return self.head.context

    def find(self, stage_type: type) -> Optional[PipelineStage]:
        for stage in self.stages:
            if isinstance(stage, stage_type):
                return stage
        return None


def build_pipeline(
    context: PipelineContext,
    pool: ConnectionPool,
    retry_policy: Optional[RetryPolicy] = None,
) -> Pipeline:
    return Pipeline(
        [
            RetryDelegatingHandler(context, retry_policy),
            ErrorDelegatingHandler(context),
            TransportHandler(context, pool),
        ]
    )
