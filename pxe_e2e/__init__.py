"""PXE/iPXE boot end-to-end test harness."""

__version__ = '0.1.0'
