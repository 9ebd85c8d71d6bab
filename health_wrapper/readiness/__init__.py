from .gate import ReadinessGate, ReadinessState

__all__ = ["ReadinessGate", "ReadinessState"]
