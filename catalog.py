"""MongoDB backed storage for the song catalog."""
from __future__ import annotations

import contextlib
import logging
import re
from typing import Dict, Iterator, List, Optional, Set

from pymongo import ASCENDING
from pymongo.client_session import ClientSession
from pymongo.database import Database


LOGGER = logging.getLogger(__name__)

DEFAULT_DATABASE = "karaoke"
DEFAULT_COLLECTION = "song"


class CatalogTransaction:
    """Catalog operations bound to one client session and its transaction."""

    def __init__(self, collection, session: ClientSession) -> None:
        self._collection = collection
        self._session = session

    def existing_keys(self) -> Set[bytes]:
        keys: Set[bytes] = set()
        for doc in self._collection.find({}, {"path": True, "_id": False}, session=self._session):
            keys.add(bytes(doc["path"]))
        return keys

    def upsert(self, document: Dict[str, object]) -> int:
        """Insert or fully overwrite the song keyed by ``document['path']``.

        Returns the number of affected documents (1 on success).
        """

        result = self._collection.replace_one(
            {"path": document["path"]},
            document,
            upsert=True,
            session=self._session,
        )
        return result.matched_count + (1 if result.upserted_id is not None else 0)

    def delete(self, path: bytes) -> int:
        result = self._collection.delete_one({"path": path}, session=self._session)
        return result.deleted_count


class CatalogStore:
    def __init__(self, db: Database, collection_name: str = DEFAULT_COLLECTION) -> None:
        self.db = db
        self.client = db.client
        self.collection = db[collection_name]

    def ensure_schema(self) -> None:
        self.collection.create_index([("path", ASCENDING)], unique=True)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[CatalogTransaction]:
        """Yield a :class:`CatalogTransaction`; commit on exit, abort on error."""

        with self.client.start_session() as session:
            with session.start_transaction():
                yield CatalogTransaction(self.collection, session)

    def ping(self) -> None:
        self.client.admin.command("ping")

    def search(
        self,
        *,
        query: Optional[str] = None,
        artist: Optional[str] = None,
        language: Optional[str] = None,
        player_count: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, object]]:
        filter_: Dict[str, object] = {}
        if query:
            pattern = {"$regex": re.escape(query), "$options": "i"}
            filter_["$or"] = [{"title": pattern}, {"artist": pattern}]
        if artist:
            filter_["artist"] = {"$regex": f"^{re.escape(artist)}$", "$options": "i"}
        if language:
            filter_["language"] = {"$regex": f"^{re.escape(language)}$", "$options": "i"}
        if player_count is not None:
            filter_["player_count"] = player_count
        cursor = (
            self.collection.find(filter_, {"_id": False})
            .sort([("artist", ASCENDING), ("title", ASCENDING)])
            .skip(offset)
            .limit(limit)
        )
        return list(cursor)
