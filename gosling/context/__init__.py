from gosling.context.compaction import (
    CHECKPOINT_SYSTEM_PROMPT,
    UPDATE_SYSTEM_PROMPT,
    ContextManager,
    Summarizer,
    TokenEstimator,
)

__all__ = [
    "CHECKPOINT_SYSTEM_PROMPT",
    "UPDATE_SYSTEM_PROMPT",
    "ContextManager",
    "Summarizer",
    "TokenEstimator",
]
