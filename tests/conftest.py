"""Shared fixtures: a scripted fake Syncthing REST API."""

import time
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from stfed.config import SyncthingConfig
from stfed.syncthing import SyncthingClient

SYNCTHING_CONFIG = SyncthingConfig(url="http://syncthing.test:8384", api_key="secret-key")


class FakeSyncthing:
    """Serves a folder list and replays queued event batches.

    Each queued batch is either a list of raw events (the JSON body) or a
    callable taking the request and returning a response or raising. When
    the queue is empty, ``on_idle`` is called and the connection is dropped.
    """

    def __init__(self, folders: Dict[str, str]):
        self.folders = folders
        self.batches: List[Any] = []
        self.event_requests: List[httpx.Request] = []
        self.config_requests = 0
        self.refusals = 0
        self.on_idle: Optional[Callable[[], None]] = None

    def queue(self, *batches: Any) -> None:
        self.batches.extend(batches)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/rest/system/config":
            self.config_requests += 1
            if self.refusals > 0:
                self.refusals -= 1
                raise httpx.ConnectError("[Errno 111] Connection refused", request=request)
            folders = [{"id": folder_id, "path": path} for folder_id, path in self.folders.items()]
            return httpx.Response(200, json={"version": 37, "folders": folders})

        if request.url.path == "/rest/events":
            self.event_requests.append(request)
            if not self.batches:
                if self.on_idle is not None:
                    self.on_idle()
                raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)
            batch = self.batches.pop(0)
            if callable(batch):
                return batch(request)
            return httpx.Response(200, json=batch)

        return httpx.Response(404)

    def client(self, config: SyncthingConfig = SYNCTHING_CONFIG) -> SyncthingClient:
        return SyncthingClient(config, transport=httpx.MockTransport(self.handler))

    @property
    def since_values(self) -> List[int]:
        return [int(request.url.params["since"]) for request in self.event_requests]

    @staticmethod
    def item_finished(event_id: int, folder: str, item: str) -> Dict[str, Any]:
        return {
            "id": event_id,
            "globalID": event_id,
            "type": "ItemFinished",
            "time": "2024-05-01T10:00:00.000000000+02:00",
            "data": {"item": item, "folder": folder, "error": None, "type": "file", "action": "update"},
        }

    @staticmethod
    def folder_summary(event_id: int, folder: str, *, need: int = 0, state_changed: str) -> Dict[str, Any]:
        return {
            "id": event_id,
            "globalID": event_id,
            "type": "FolderSummary",
            "time": "2024-05-01T10:00:00.000000000+02:00",
            "data": {
                "folder": folder,
                "summary": {"needTotalItems": need, "state": "idle", "stateChanged": state_changed},
            },
        }

    @staticmethod
    def local_change(
        event_id: int, folder: str, path: str, *, item_type: str = "file", action: str = "modified"
    ) -> Dict[str, Any]:
        return {
            "id": event_id,
            "globalID": event_id,
            "type": "LocalChangeDetected",
            "time": "2024-05-01T10:00:00.000000000+02:00",
            "data": {"folder": folder, "label": folder, "type": item_type, "action": action, "path": path},
        }

    @staticmethod
    def config_saved(event_id: int) -> Dict[str, Any]:
        return {
            "id": event_id,
            "globalID": event_id,
            "type": "ConfigSaved",
            "time": "2024-05-01T10:00:00.000000000+02:00",
            "data": {"version": 37},
        }


@pytest.fixture
def data_folder(tmp_path):
    folder = tmp_path.resolve() / "data"
    folder.mkdir()
    return folder


@pytest.fixture
def syncthing(data_folder):
    return FakeSyncthing({"abcd-1234": str(data_folder)})


@pytest.fixture
def wait_for():
    def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait_for
