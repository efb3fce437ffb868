"""Certificate store: index, on-disk layout, snapshots and reconciliation."""

from certkeeper.store.layout import StoreLayout
from certkeeper.store.reconcile import ReconcileChange
from certkeeper.store.store import CertificateStore

__all__ = ["CertificateStore", "ReconcileChange", "StoreLayout"]
