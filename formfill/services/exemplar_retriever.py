"""
Exemplar Retriever.

Finds previously solved transcripts similar to the current one so they
can be shown to the model as few-shot examples. Embeddings come from
the OpenAI embeddings endpoint; exemplars live in an OpenSearch k-NN
index scoped by domain (template) id.

Retrieval never fails a request: any error degrades to zero exemplars.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

import httpx

from formfill.config import Settings
from formfill.errors import ProviderTransportError
from formfill.logging_config import get_logger
from formfill.schemas.exemplar import Exemplar, ExemplarDocument
from formfill.schemas.fields import FieldSpec
from formfill.services.retry import RetryPolicy

logger = get_logger(__name__)

MAX_K = 5
# The nearest neighbour is skipped so a query never retrieves its own
# (or a near-identical) solved document.
SKIP_TOP = 1


def embedding_input(domain_id: str, text: str) -> str:
    """Domain-prefixed embedding input, so templates do not leak into each other."""
    return f"templateId={domain_id}\n{text}"


def clamp_k(k: int) -> int:
    """At most MAX_K; zero or negative means no exemplars."""
    return max(0, min(MAX_K, int(k)))


class EmbeddingClient:
    """OpenAI embeddings over httpx."""

    def __init__(
        self,
        model: str,
        api_key: str,
        retry: RetryPolicy,
        base_url: str = "https://api.openai.com/v1",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.retry = retry
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        return await self.retry.run(lambda: self._request(text), label=f"embed:{self.model}")

    async def _request(self, text: str) -> list[float]:
        async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/embeddings",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "input": text},
            )
            response.raise_for_status()
            data = response.json()
        try:
            return [float(x) for x in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderTransportError(f"unexpected embeddings response shape: {e}") from e


class VectorIndex:
    """Minimal OpenSearch k-NN client (REST over httpx)."""

    def __init__(
        self,
        base_url: str,
        index: str,
        retry: RetryPolicy,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.index = index
        self.retry = retry
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=None, transport=self._transport)

    async def search(self, vector: list[float], domain_id: str, size: int) -> list[dict[str, Any]]:
        """Top ``size`` hits by cosine similarity within one domain."""
        body = {
            "size": size,
            "query": {
                "script_score": {
                    "query": {"bool": {"filter": [{"term": {"templateId": domain_id}}]}},
                    "script": {
                        "source": "knn_score",
                        "lang": "knn",
                        "params": {
                            "field": "embedding",
                            "query_value": vector,
                            "space_type": "cosinesimil",
                        },
                    },
                }
            },
            "_source": ["id", "templateId", "transcript", "result"],
        }

        async def _search() -> list[dict[str, Any]]:
            async with self._client() as client:
                response = await client.post(f"/{self.index}/_search", json=body)
                response.raise_for_status()
                data = response.json()
            return data.get("hits", {}).get("hits", [])

        return await self.retry.run(_search, label=f"search:{self.index}")

    async def ensure_index(self, dimension: int) -> bool:
        """Create the index with a cosine HNSW vector mapping. Returns True if created."""

        async def _ensure() -> bool:
            async with self._client() as client:
                head = await client.head(f"/{self.index}")
                if head.status_code == 200:
                    return False
                response = await client.put(f"/{self.index}", json={
                    "settings": {"index": {"knn": True, "knn.algo_param.ef_search": 100}},
                    "mappings": {
                        "properties": {
                            "templateId": {"type": "keyword"},
                            "transcript": {"type": "text"},
                            "result": {"type": "object", "enabled": True},
                            "embedding": {
                                "type": "knn_vector",
                                "dimension": dimension,
                                "method": {
                                    "name": "hnsw",
                                    "space_type": "cosinesimil",
                                    "engine": "nmslib",
                                    "parameters": {"ef_construction": 128, "m": 16},
                                },
                            },
                        }
                    },
                })
                response.raise_for_status()
                return True

        return await self.retry.run(_ensure, label=f"ensure_index:{self.index}")

    async def put(self, doc: ExemplarDocument) -> None:
        async def _put() -> None:
            async with self._client() as client:
                if doc.id:
                    response = await client.put(f"/{self.index}/_doc/{doc.id}", json=doc.to_source())
                else:
                    response = await client.post(f"/{self.index}/_doc", json=doc.to_source())
                response.raise_for_status()

        await self.retry.run(_put, label=f"index_doc:{self.index}")


class ExemplarRetriever:
    """Top-k similar solved exemplars, projected onto the current schema."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        index: VectorIndex,
        domain_id: str,
        max_chars: int = 1200,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.domain_id = domain_id
        self.max_chars = max_chars

    async def retrieve(
        self,
        query_text: str,
        schema: list[FieldSpec],
        k: int,
        domain_id: Optional[str] = None,
    ) -> list[Exemplar]:
        """
        Return at most ``k`` exemplars (never more than five), most similar first.

        Requests ``k + 1`` hits and drops the nearest one. Any failure
        returns an empty list.
        """
        k = clamp_k(k)
        if k == 0 or not query_text.strip():
            return []
        domain = domain_id or self.domain_id

        try:
            vector = await self.embedder.embed(embedding_input(domain, query_text))
            hits = await self.index.search(vector, domain, size=k + SKIP_TOP)
        except Exception as e:
            logger.warning("exemplar_retrieval_failed", domain_id=domain, error=str(e))
            return []

        chosen = hits[SKIP_TOP:SKIP_TOP + k]
        exemplars = [self._to_exemplar(hit, schema) for hit in chosen]
        logger.info("exemplars_retrieved", domain_id=domain, hits=len(hits), returned=len(exemplars))
        return exemplars

    def _to_exemplar(self, hit: dict[str, Any], schema: list[FieldSpec]) -> Exemplar:
        source = hit.get("_source") or {}
        text = source.get("transcript") or ""
        if len(text) > self.max_chars:
            text = text[: self.max_chars]
        result = source.get("result") or {}
        expected = {f.id: result.get(f.id) for f in schema}
        return Exemplar(
            id=str(source.get("id") or hit.get("_id") or ""),
            transcript=text,
            expected=expected,
        )


# ── Ingestion ────────────────────────────────────────────────────


def normalize_record(record: dict[str, Any]) -> tuple[Optional[str], str, dict[str, Any]]:
    """
    Accept ``{id, transcript, result}`` or MUC-4 style ``{docid, doctext, templates}``.

    Raises:
        ValueError: the record matches neither shape.
    """
    if record.get("transcript") and isinstance(record.get("result"), dict):
        return record.get("id"), record["transcript"], record["result"]
    if record.get("doctext") and isinstance(record.get("templates"), list):
        templates = record["templates"]
        return record.get("docid"), record["doctext"], (templates[0] if templates else {})
    raise ValueError("record shape not recognized; provide transcript/result or docid/doctext/templates")


class ExemplarStore:
    """Write side of the exemplar index, used by the ingestion script."""

    def __init__(self, embedder: EmbeddingClient, index: VectorIndex, domain_id: str, dimension: int) -> None:
        self.embedder = embedder
        self.index = index
        self.domain_id = domain_id
        self.dimension = dimension

    async def ingest(self, records: Iterable[dict[str, Any]]) -> int:
        """Embed and index records. Malformed records are skipped. Returns the count indexed."""
        created = await self.index.ensure_index(self.dimension)
        if created:
            logger.info("exemplar_index_created", index=self.index.index, dimension=self.dimension)

        count = 0
        for record in records:
            try:
                doc_id, transcript, result = normalize_record(record)
            except ValueError as e:
                logger.warning("skipping_malformed_record", error=str(e))
                continue
            vector = await self.embedder.embed(embedding_input(self.domain_id, transcript))
            await self.index.put(ExemplarDocument(
                id=doc_id,
                domain_id=self.domain_id,
                transcript=transcript,
                result=result,
                embedding=vector,
            ))
            count += 1
            logger.info("exemplar_indexed", id=doc_id, count=count)
        return count


def create_retriever(settings: Settings) -> ExemplarRetriever:
    return ExemplarRetriever(
        embedder=_embedder(settings),
        index=_index(settings),
        domain_id=settings.domain_id,
        max_chars=settings.fewshot_max_chars,
    )


def create_store(settings: Settings) -> ExemplarStore:
    return ExemplarStore(_embedder(settings), _index(settings), settings.domain_id, settings.vector_dim)


def _embedder(settings: Settings) -> EmbeddingClient:
    return EmbeddingClient(
        settings.embedding_model,
        settings.openai_api_key,
        RetryPolicy.from_settings(settings, settings.embedding_timeout_seconds),
        base_url=settings.openai_base_url,
    )


def _index(settings: Settings) -> VectorIndex:
    return VectorIndex(
        settings.opensearch_url,
        settings.exemplar_index,
        RetryPolicy.from_settings(settings, settings.vector_search_timeout_seconds),
    )
