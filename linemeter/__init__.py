"""linemeter: usage metering and billing-period reconciliation for virtual phone lines."""

__version__ = "0.4.0"
