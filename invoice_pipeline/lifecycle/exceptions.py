class IllegalTransitionError(Exception):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Illegal {entity} transition {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target
