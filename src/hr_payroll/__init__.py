"""Payroll calculation, approval and error-correction workflow."""

__version__ = "0.1.0"
