from .base import PipelineContext, PipelineStage
from .builder import Pipeline, build_pipeline
from .error_handler import ErrorDelegatingHandler
from .retry_handler import RetryDelegatingHandler, default_retry_policy
from .transport_handler import TransportHandler

__all__ = [
    "ErrorDelegatingHandler",
    "Pipeline",
    "PipelineContext",
    "PipelineStage",
    "RetryDelegatingHandler",
    "TransportHandler",
    "build_pipeline",
    "default_retry_policy",
]
