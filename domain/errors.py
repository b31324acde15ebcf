from __future__ import annotations


class FunnelFlowError(Exception):
    pass


class PreconditionViolation(FunnelFlowError):
    """The caller broke the editing contract: an unknown id or an unexpected state."""


class StageNotFound(PreconditionViolation, LookupError):
    def __init__(self, stage_id: str) -> None:
        super().__init__(f"Stage not found: {stage_id}")
        self.stage_id = stage_id


class BlockNotFound(PreconditionViolation, LookupError):
    def __init__(self, block_id: str) -> None:
        super().__init__(f"Block not found: {block_id}")
        self.block_id = block_id


class OptionIndexOutOfRange(PreconditionViolation, IndexError):
    def __init__(self, block_id: str, option_index: int) -> None:
        super().__init__(f"Option index {option_index} out of range for block {block_id}")
        self.block_id = block_id
        self.option_index = option_index


class StageIndexOutOfRange(PreconditionViolation, IndexError):
    pass


class DuplicateBlockId(PreconditionViolation, ValueError):
    pass


class DuplicateStageId(PreconditionViolation, ValueError):
    pass


class NoPendingAction(PreconditionViolation):
    pass


class ActionAlreadyPending(PreconditionViolation):
    pass


class InvalidSelection(PreconditionViolation, ValueError):
    pass


class LastFunnelBlock(PreconditionViolation, ValueError):
    def __init__(self, block_id: str) -> None:
        super().__init__(f"Block {block_id} is the last card of the funnel")
        self.block_id = block_id


class UnresolvedUpstreamError(FunnelFlowError):
    """The persistence collaborator rejected a committed flow."""
