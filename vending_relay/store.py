import asyncio
import copy
import logging
from typing import Any, Callable, List

import firebase_admin
from firebase_admin import credentials, db
from firebase_admin.exceptions import FirebaseError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vending_relay.config import Settings
from vending_relay.errors import ConfigurationError, StoreError

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[dict], None]


def prune_none(value):
    if isinstance(value, dict):
        return {k: prune_none(v) for k, v in value.items() if v is not None}
    return value


class Subscription:
    def __init__(self, close: Callable[[], None]):
        self._close = close
        self.closed = False

    async def close(self):
        # Closing a firebase listener joins its thread
        if not self.closed:
            self.closed = True
            await asyncio.to_thread(self._close)


class DataTree:
    """Observable key/value tree. Writes are full overwrites of a path."""

    async def set(self, path: str, value: Any):
        raise NotImplementedError

    async def delete(self, path: str):
        raise NotImplementedError

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        """Call ``callback`` with the whole tree on every change."""
        raise NotImplementedError


def _split(path: str) -> List[str]:
    return [part for part in path.split("/") if part]


def _child(node, key):
    child = node.get(key)
    if isinstance(child, list):
        child = node[key] = {str(i): v for i, v in enumerate(child) if v is not None}
    return child


def _put(tree, keys, value):
    if not keys:
        return value if value is not None else {}
    if not isinstance(tree, dict):
        tree = {}
    node = tree
    for key in keys[:-1]:
        child = _child(node, key)
        if not isinstance(child, dict):
            if value is None:
                return tree
            child = node[key] = {}
        node = child
    if value is None:
        node.pop(keys[-1], None)
    else:
        node[keys[-1]] = value
    return tree


def apply_event(tree, event_type: str, path: str, data):
    """Fold a realtime-database listener event into a local mirror of the tree."""
    keys = _split(path)
    if event_type == "put":
        return _put(tree, keys, data)
    if event_type == "patch":
        for key, value in (data or {}).items():
            tree = _put(tree, keys + _split(key), value)
        return tree
    logger.warning(f"Ignoring unknown listener event type {event_type!r}")
    return tree


def init_firebase(settings: Settings, name: str = "[DEFAULT]") -> firebase_admin.App:
    """Create the firebase app, raising ConfigurationError instead of continuing without one."""
    try:
        return firebase_admin.get_app(name)
    except ValueError:
        pass
    try:
        cred = credentials.Certificate(settings.firebase_account)
        app = firebase_admin.initialize_app(
            cred, {"databaseURL": settings.firebase_db_url}, name=name
        )
    except (ValueError, FirebaseError) as e:
        raise ConfigurationError(f"Firebase initialization failed: {e}") from e
    logger.info("Firebase Admin initialized")
    return app


_write_retry = retry(
    retry=retry_if_exception_type(FirebaseError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


class FirebaseTree(DataTree):
    def __init__(self, app: firebase_admin.App, root: str):
        self.app = app
        self.root = root.strip("/")

    def _ref(self, path: str = ""):
        full = f"{self.root}/{path.strip('/')}" if path else self.root
        return db.reference(full, app=self.app)

    @_write_retry
    def _set_blocking(self, path, value):
        self._ref(path).set(value)

    @_write_retry
    def _delete_blocking(self, path):
        self._ref(path).delete()

    async def set(self, path: str, value: Any):
        try:
            await asyncio.to_thread(self._set_blocking, path, prune_none(value))
        except FirebaseError as e:
            raise StoreError(f"set {self.root}/{path} failed: {e}") from e

    async def delete(self, path: str):
        try:
            await asyncio.to_thread(self._delete_blocking, path)
        except FirebaseError as e:
            raise StoreError(f"delete {self.root}/{path} failed: {e}") from e

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        loop = asyncio.get_running_loop()
        mirror = {"tree": {}}

        def on_event(event):
            # Runs on the SDK listener thread
            mirror["tree"] = apply_event(mirror["tree"], event.event_type, event.path, event.data)
            snapshot = copy.deepcopy(mirror["tree"])
            loop.call_soon_threadsafe(callback, snapshot if isinstance(snapshot, dict) else {})

        registration = self._ref().listen(on_event)
        logger.info(f"Listening on {self.root}")
        return Subscription(registration.close)
