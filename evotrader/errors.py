"""
Exception hierarchy for the evotrader control core
"""


class EvoTraderError(Exception):
    """Base class for all evotrader errors"""


class InvalidTransition(EvoTraderError):
    """A state machine was asked to move from a state that does not allow it"""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity}: cannot transition {current} -> {target}")


class InvariantViolation(EvoTraderError):
    """An invariant that must hold by construction was observed broken"""


class CollaboratorError(EvoTraderError):
    """An external collaborator (market data, exchange, breeding) failed or timed out"""

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}")


class KeyMaterialError(EvoTraderError):
    """Private key material could not be decoded. Never carries the key itself."""
