# signals.py
"""
Qt notifications emitted by the database store after committed mutations.
"""
from PySide6.QtCore import QObject, Signal


class StoreSignals(QObject):
    changed = Signal(int)  # modification revision
    rekey_required = Signal(int)  # messages the deferred save needed
    saved = Signal(str)  # package name
