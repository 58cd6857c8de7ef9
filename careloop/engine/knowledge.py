"""
Knowledge snippets — small reference documents quoted into the analysis
context.  Search is keyword overlap: cheap, deterministic, no index.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from careloop.engine.models import KnowledgeDocument
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.knowledge")

_WORD = re.compile(r"\w+", re.UNICODE)
MIN_TOKEN_LENGTH = 3
SNIPPET_CHARS = 300


@dataclass
class Snippet:
    document_id: str
    source_name: str
    title: str
    snippet: str
    score: int


def _tokens(text: str) -> set[str]:
    return {t for t in (w.casefold() for w in _WORD.findall(text)) if len(t) >= MIN_TOKEN_LENGTH}


class KnowledgeBase:
    def __init__(self, store: EngineStore) -> None:
        self._store = store

    def add_document(self, title: str, content: str, source_name: str = "default") -> KnowledgeDocument:
        document = KnowledgeDocument(title=title, content=content, source_name=source_name)
        self._store.save_document(document)
        logger.info("Knowledge document added: %s (%s)", title, source_name)
        return document

    def search(self, query: str, top_k: int = 3) -> list[Snippet]:
        """Enabled documents ranked by how many query words they contain."""
        wanted = _tokens(query)
        if not wanted or top_k <= 0:
            return []

        scored = []
        for document in self._store.list_documents(enabled_only=True):
            title_tokens = _tokens(document.title)
            body_tokens = _tokens(document.content)
            # Title hits weigh double
            score = 2 * len(wanted & title_tokens) + len(wanted & body_tokens)
            if score:
                scored.append((score, document))

        scored.sort(key=lambda pair: (-pair[0], pair[1].created_at))
        return [
            Snippet(
                document_id=doc.id,
                source_name=doc.source_name,
                title=doc.title,
                snippet=doc.content[:SNIPPET_CHARS],
                score=score,
            )
            for score, doc in scored[:top_k]
        ]
