"""Map informer notifications to the reconciliation key that must be resynced.

Every derived kind lives in the namespace it describes, so the owning
namespace is read straight off the object's metadata; no owner-reference
traversal is needed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from argo_controller.src.kube import ObjectKind

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

DERIVED_KINDS = frozenset(
    {ObjectKind.SERVICE_ACCOUNT, ObjectKind.ROLE_BINDING, ObjectKind.SECRET}
)


@dataclass(frozen=True)
class Notification:
    """One change observed by the watch/cache layer.

    ``old`` is only populated for ``MODIFIED`` notifications.
    """

    kind: ObjectKind
    change_type: str
    obj: Any
    old: Any = None


def _metadata(obj: Any) -> Any:
    return getattr(obj, "metadata", None)


def _resource_version(obj: Any) -> str | None:
    return getattr(_metadata(obj), "resource_version", None)


def is_noop_update(notification: Notification) -> bool:
    """True for a ``MODIFIED`` whose old and new ``resource_version`` are identical.

    Resync ticks replay cached objects as updates with an unchanged version;
    suppressing them keeps the engine's own writes from re-triggering it.
    """
    if notification.change_type != MODIFIED or notification.old is None:
        return False
    new_version = _resource_version(notification.obj)
    return new_version is not None and new_version == _resource_version(notification.old)


def namespace_key(notification: Notification) -> str | None:
    """Return the namespace that owns the notified object, or None to ignore it."""
    metadata = _metadata(notification.obj)
    if metadata is None:
        return None

    if notification.kind is ObjectKind.NAMESPACE:
        if notification.change_type not in {ADDED, MODIFIED}:
            return None
        return getattr(metadata, "name", None) or None

    if notification.kind not in DERIVED_KINDS:
        return None
    if notification.change_type == DELETED:
        return getattr(metadata, "namespace", None) or None
    if notification.change_type != MODIFIED or is_noop_update(notification):
        return None
    return getattr(metadata, "namespace", None) or None


def service_account_key(notification: Notification) -> str | None:
    """Return ``<namespace>/<name>`` for service account adds and real updates."""
    if notification.kind is not ObjectKind.SERVICE_ACCOUNT:
        return None
    if notification.change_type not in {ADDED, MODIFIED} or is_noop_update(notification):
        return None

    metadata = _metadata(notification.obj)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        return None
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, separator, name = key.partition("/")
    if not separator or not namespace or not name:
        raise ValueError(f"Expected a <namespace>/<name> key, got: {key!r}")
    return namespace, name
