"""Core module - ambient services shared by the reconciliation engine.

Contains the error hierarchy, configuration, structured logging, metrics
and the audit sink. Nothing in here knows about bills or catalogs.
"""

__version__ = "1.0.0"
