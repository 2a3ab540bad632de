class InvalidRequest(ValueError):
    """Input rejected before any state change."""


class TargetNotFound(LookupError):
    """The server a scan was requested for does not exist."""

    def __init__(self, target_id: int) -> None:
        super().__init__(f"Server {target_id} not found")
        self.target_id = target_id
