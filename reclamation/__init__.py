from .sweeper import SweepReport, Sweeper

__all__ = ["SweepReport", "Sweeper"]
