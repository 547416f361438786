from gosling.engine.cancellation import CancellationToken
from gosling.engine.controller import ReplyOutcome, TurnController, TurnState

__all__ = ["CancellationToken", "ReplyOutcome", "TurnController", "TurnState"]
