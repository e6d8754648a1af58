import copy
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import DuplicateKeyError

from leadflow.db.store import build_update_document
from leadflow.services.identity import IdentityResolver
from leadflow.services.outbound import Messenger
from leadflow.services.sequence_catalog import SequenceCatalog
from leadflow.services.storage import StorageError
from leadflow.services.media import MediaProcessingError

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

_MISSING = object()


def _resolve(document, path):
    value = document
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _compare(value, op, arg):
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < arg
    if op == "$lte":
        return value <= arg
    if op == "$gt":
        return value > arg
    return value >= arg


def _matches(document, query):
    for field, condition in (query or {}).items():
        value = _resolve(document, field)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if op == "$exists":
                    if (value is not _MISSING) != bool(arg):
                        return False
                elif op == "$ne":
                    if value is not _MISSING and value == arg:
                        return False
                elif op == "$in":
                    if value is _MISSING or value not in arg:
                        return False
                elif op in ("$lt", "$lte", "$gt", "$gte"):
                    if not _compare(value, op, arg):
                        return False
                else:
                    raise NotImplementedError(op)
        elif isinstance(value, list) and not isinstance(condition, list):
            if condition not in value:
                return False
        elif value is _MISSING:
            if condition is not None:
                return False
        elif value != condition:
            return False
    return True


def _sort_key(document, field):
    value = _resolve(document, field)
    if value is _MISSING or value is None:
        return (1, 0)
    return (0, value)


def _set_path(document, path, value):
    parts = path.split(".")
    for part in parts[:-1]:
        document = document.setdefault(part, {})
    document[parts[-1]] = value


class FakeStore:
    """In-memory stand-in for DocumentStore with the same method contract."""

    ASCENDING = 1
    DESCENDING = -1

    def __init__(self):
        self.collections = defaultdict(dict)
        self.find_calls = defaultdict(int)

    def seed(self, collection, document):
        document = copy.deepcopy(document)
        document.setdefault("_id", uuid.uuid4().hex)
        self.collections[collection][document["_id"]] = document
        return document["_id"]

    def raw(self, collection, doc_id):
        return self.collections[collection].get(doc_id)

    async def get(self, collection, doc_id):
        document = self.collections[collection].get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def find(self, collection, query, limit=None, sort=None):
        self.find_calls[collection] += 1
        documents = [copy.deepcopy(d) for d in self.collections[collection].values() if _matches(d, query)]
        for field, direction in reversed(sort or []):
            documents.sort(key=lambda d: _sort_key(d, field), reverse=direction < 0)
        if limit:
            documents = documents[:limit]
        return documents

    async def find_one(self, collection, query, sort=None):
        documents = await self.find(collection, query, limit=1, sort=sort)
        return documents[0] if documents else None

    async def insert(self, collection, document):
        if document.get("_id") in self.collections[collection]:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {collection} _id: {document['_id']}")
        return self.seed(collection, document)

    async def update(self, collection, doc_id, *, set_fields=None, unset_fields=None, increment=None,
                     add_to_set=None, where=None):
        update = build_update_document(set_fields, unset_fields, increment, add_to_set)
        document = self.collections[collection].get(doc_id)
        if document is None or not _matches(document, where or {}):
            return False
        for path, value in update.get("$set", {}).items():
            _set_path(document, path, copy.deepcopy(value))
        for path in update.get("$unset", {}):
            document.pop(path, None)
        for path, amount in update.get("$inc", {}).items():
            document[path] = document.get(path, 0) + amount
        for path, spec in update.get("$addToSet", {}).items():
            values = document.setdefault(path, [])
            for value in spec["$each"]:
                if value not in values:
                    values.append(copy.deepcopy(value))
        return True


class FakeTransport:
    def __init__(self, connected=True):
        self.connected = connected
        self.sent = []
        self.fail_with = None
        self.media_failures = []

    async def status(self):
        return {"connected": self.connected, "status": "open" if self.connected else "close"}

    async def is_connected(self):
        return self.connected

    async def send_text(self, target, text, options=None):
        if self.fail_with:
            raise self.fail_with
        self.sent.append(("text", target, text))
        return {"ok": True}

    async def send_media(self, target, kind, url_or_bytes, options=None):
        if self.media_failures:
            raise self.media_failures.pop(0)
        if self.fail_with:
            raise self.fail_with
        self.sent.append((kind, target, url_or_bytes, dict(options or {})))
        return {"ok": True}


class FakeLLM:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def complete(self, system_prompt, user_prompt, max_tokens=None):
        self.calls.append((system_prompt, user_prompt, max_tokens))
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, Exception):
            raise response
        return response


class FakeAudioClient:
    def __init__(self, task_id="task-1", error=None):
        self.task_id = task_id
        self.error = error
        self.calls = []

    async def submit_task(self, title, style_prompt, lyrics):
        self.calls.append({"title": title, "style_prompt": style_prompt, "lyrics": lyrics})
        if self.error:
            raise self.error
        return self.task_id


class FakeMedia:
    def __init__(self, fail_step=None):
        self.fail_step = fail_step
        self.calls = []

    def _step(self, step, data):
        self.calls.append(step)
        if self.fail_step == step:
            raise MediaProcessingError(step, "boom")
        return data + f"|{step}".encode()

    async def trim(self, data, start, duration):
        return self._step("trim", data)

    async def mix_overlay(self, data, overlay, delay_ms, overlay_volume):
        return self._step("watermark", data)

    async def transcode(self, data, codec, container=None):
        return self._step("transcode", data)


class FakeStorage:
    def __init__(self):
        self.remote = {}
        self.files = {}
        self.fail_download = set()
        self.fail_upload = False

    async def download(self, url, timeout=120.0):
        if url in self.fail_download:
            raise StorageError(f"Download of {url} failed")
        if url in self.files_by_url():
            return self.files_by_url()[url]
        return self.remote.get(url, b"remote-audio")

    def files_by_url(self):
        return {self.public_url(name): data for name, (data, _) in self.files.items()}

    def public_url(self, filename):
        return f"http://media.test/api/media/{filename}"

    async def upload(self, filename, data, content_type):
        if self.fail_upload:
            raise StorageError(f"Upload of {filename} failed")
        self.files[filename] = (data, content_type)
        return self.public_url(filename)

    async def open(self, filename):
        return self.files.get(filename)


class FrozenClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def catalog(store):
    return SequenceCatalog(store)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def resolver(store):
    return IdentityResolver(store, country_code="52")


@pytest.fixture
def messenger(store, transport, resolver):
    return Messenger(store, transport, resolver)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def media_storage():
    return FakeStorage()
