"""Pipeline orchestration package for mailsift."""

from .adaptive_batch import AdaptiveBatchProcessor, AdaptiveBatchReport, BatchSizeLadder
from .admission import AdmissionGate
from .chunk_orchestrator import ChunkOrchestrator
from .merger import ItemCollection, ResultMerger, SingleItem, normalize_output
from .orchestrator import MailPipeline
from .state import DEFAULT_STEPS, FailedBatchManager, PipelineStateStore, ProgressManager

__all__ = [
    "AdaptiveBatchProcessor",
    "AdaptiveBatchReport",
    "AdmissionGate",
    "BatchSizeLadder",
    "ChunkOrchestrator",
    "DEFAULT_STEPS",
    "FailedBatchManager",
    "ItemCollection",
    "MailPipeline",
    "PipelineStateStore",
    "ProgressManager",
    "ResultMerger",
    "SingleItem",
    "normalize_output",
]
