from .progress import StatsPrinter

__all__ = ["StatsPrinter"]
