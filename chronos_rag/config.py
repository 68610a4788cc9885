"""
Application configuration.

Settings come from config/config.yaml (loaded with yaml.safe_load into
pydantic models); secrets come from the environment, populated from a
.env file via python-dotenv.  A missing YAML file means all defaults.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field

from chronos_rag.generation.context_builder import ContextOptions
from chronos_rag.retrieval.search import SearchOptions

CONFIG_PATH = Path("config/config.yaml")


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/chronos_rag.log"
    json_file: bool = False


class EmbeddingConfig(BaseModel):
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 512


class IndexConfig(BaseModel):
    index_dir: str = "data/index"
    chunks_path: str = "data/chunks/all_chunks.json"
    catalog_path: str = "data/catalog.json"


class SearchConfig(BaseModel):
    match_count: int = Field(5, gt=0)
    similarity_threshold: float = Field(0.7, ge=0.0, le=1.0)
    boost_recent: bool = True
    boost_popular: bool = True
    deduplicate: bool = True
    deduplicate_similarity_threshold: float = Field(0.95, ge=0.0, le=1.0)
    max_per_source: Optional[int] = None


class RankingConfig(BaseModel):
    similarity_weight: float = Field(0.60, ge=0.0)
    recency_weight: float = Field(0.15, ge=0.0)
    popularity_weight: float = Field(0.15, ge=0.0)
    affinity_weight: float = Field(0.10, ge=0.0)


class CacheConfig(BaseModel):
    enabled: bool = True
    backend: Literal["memory", "redis"] = "memory"
    ttl_seconds: int = Field(300, gt=0)


class ContextConfig(BaseModel):
    max_tokens: int = Field(8000, gt=0)
    format: Literal["markdown", "xml", "plain"] = "markdown"
    include_timestamps: bool = True
    include_source_titles: bool = True
    show_rank_scores: bool = False
    deduplicate_content: bool = False


class GenerationConfig(BaseModel):
    model: str = "claude-haiku-4-5-20251001"
    max_tokens: int = 1024
    temperature: float = 0.1
    custom_instructions: Optional[str] = None


class SessionsConfig(BaseModel):
    path: str = "data/sessions.json"
    history_window: int = 5
    generate_titles: bool = True


class AppConfig(BaseModel):
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)

    @property
    def redis_url(self) -> str:
        return os.getenv("REDIS_URL", "redis://localhost:6379/0")

    def to_search_options(self, **overrides) -> SearchOptions:
        s = self.search
        options = SearchOptions(
            **self.ranking.model_dump(),
            match_count=s.match_count,
            similarity_threshold=s.similarity_threshold,
            boost_recent=s.boost_recent,
            boost_popular=s.boost_popular,
            enable_cache=self.cache.enabled,
            cache_ttl_seconds=self.cache.ttl_seconds,
            deduplicate=s.deduplicate,
            deduplicate_similarity_threshold=s.deduplicate_similarity_threshold,
            max_per_source=s.max_per_source,
        )
        for name, value in overrides.items():
            setattr(options, name, value)
        return options

    def to_context_options(self) -> ContextOptions:
        return ContextOptions(**self.context.model_dump())


def load_config(path: str | Path = CONFIG_PATH) -> AppConfig:
    """Load .env, then the YAML config (defaults when the file is absent)."""
    load_dotenv()
    p = Path(path)
    if not p.exists():
        logger.warning(f"[Config] {p} not found -- using defaults")
        return AppConfig()

    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return AppConfig(**raw)
