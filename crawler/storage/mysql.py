"""
MySQL implementation of CrawlStore.

The connection is shared by all workers, so every operation is serialized
through DB_SEMAPHORE and runs on its own cursor.
"""

import json
import os
import threading
from datetime import datetime, timezone
from typing import List, Set, Dict, Any

import pymysql

from crawler.core import StorageUnavailable
from crawler.models import FetchOutcome, PatternSignature
from crawler.storage.base import CrawlStore
from crawler.url_utils import host_of

DB_CONFIG = {
    "host": os.getenv("MYSQL_HOST", "localhost"),
    "port": int(os.getenv("MYSQL_PORT", 3306)),
    "user": os.getenv("MYSQL_USER", "root"),
    "password": os.getenv("MYSQL_PASSWORD", ""),
    "database": os.getenv("MYSQL_DATABASE", "news_crawl"),
    "charset": "utf8mb4",
    "autocommit": False,
}

DB_SEMAPHORE = threading.BoundedSemaphore(1)

REQUIRED_TABLES = (
    "crawl_fetches",
    "crawl_dead_urls",
    "crawl_hubs",
    "crawl_signatures",
    "crawl_page_analysis",
    "crawl_decision_traces",
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS crawl_fetches (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        url VARCHAR(2048) NOT NULL,
        final_url VARCHAR(2048),
        http_status INT,
        source_method VARCHAR(16) NOT NULL,  -- 'cache', 'network' or 'headless'
        duration_ms INT NOT NULL,
        bytes INT NOT NULL DEFAULT 0,
        error_kind VARCHAR(32),
        attempts INT NOT NULL DEFAULT 1,
        fetched_at DATETIME NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_dead_urls (
        url VARCHAR(768) PRIMARY KEY,
        host VARCHAR(255) NOT NULL,
        http_status INT NOT NULL,
        hits INT NOT NULL DEFAULT 1,
        last_seen DATETIME NOT NULL,
        INDEX idx_dead_host (host)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_hubs (
        host VARCHAR(255) NOT NULL,
        url VARCHAR(768) NOT NULL,
        source VARCHAR(64) NOT NULL,
        confidence DOUBLE NOT NULL,
        updated_at DATETIME NOT NULL,
        PRIMARY KEY (host, url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_signatures (
        host VARCHAR(255) NOT NULL,
        signature_hash CHAR(16) NOT NULL,
        confidence DOUBLE NOT NULL,
        observed_count INT NOT NULL,
        example_urls TEXT,
        PRIMARY KEY (host, signature_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_page_analysis (
        url VARCHAR(768) PRIMARY KEY,
        host VARCHAR(255) NOT NULL,
        signature_hash CHAR(16) NOT NULL,
        confidence DOUBLE NOT NULL,
        analyzed_at DATETIME NOT NULL,
        INDEX idx_analysis_host_conf (host, confidence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_decision_traces (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        job_id VARCHAR(64),
        kind VARCHAR(64) NOT NULL,
        message VARCHAR(1024),
        details TEXT,
        created_at DATETIME NOT NULL
    )
    """,
)


def connect(config: Dict[str, Any] | None = None):
    """Opens a connection using DB_CONFIG; raises StorageUnavailable on failure."""
    try:
        return pymysql.connect(**(config or DB_CONFIG))
    except pymysql.MySQLError as e:
        raise StorageUnavailable(f"Failed to connect to MySQL: {e}") from e


class MySQLCrawlStore(CrawlStore):

    def __init__(self, connection_pool):
        self._pool = connection_pool

    def create_tables(self):
        """Creates any missing table. Existing tables and rows are left untouched."""
        with DB_SEMAPHORE, self._pool.cursor() as cursor:
            for statement in SCHEMA:
                cursor.execute(statement)
            self._pool.commit()

    def missing_tables(self) -> List[str]:
        with DB_SEMAPHORE, self._pool.cursor() as cursor:
            cursor.execute("SHOW TABLES")
            existing = {row[0] for row in cursor.fetchall()}
        return [t for t in REQUIRED_TABLES if t not in existing]

    def _write(self, sql: str, params: tuple) -> int:
        with DB_SEMAPHORE:
            with self._pool.cursor() as cursor:
                try:
                    affected = cursor.execute(sql, params)
                    self._pool.commit()
                    return affected
                except Exception:
                    self._pool.rollback()
                    raise

    def _read(self, sql: str, params: tuple):
        with DB_SEMAPHORE:
            with self._pool.cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.fetchall()

    def record_fetch(self, outcome: FetchOutcome) -> None:
        sql = """
            INSERT INTO crawl_fetches (
                url, final_url, http_status, source_method, duration_ms,
                bytes, error_kind, attempts, fetched_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._write(sql, (
            outcome.url, outcome.final_url, outcome.http_status, outcome.source_method.value,
            outcome.duration_ms, outcome.bytes, outcome.error_kind, outcome.attempts,
            datetime.now(timezone.utc),
        ))

    def mark_dead(self, url: str, http_status: int) -> None:
        sql = """
            INSERT INTO crawl_dead_urls (url, host, http_status, hits, last_seen)
            VALUES (%s, %s, %s, 1, %s)
            ON DUPLICATE KEY UPDATE hits = hits + 1, http_status = VALUES(http_status), last_seen = VALUES(last_seen)
        """
        self._write(sql, (url, host_of(url), http_status, datetime.now(timezone.utc)))

    def known_dead_urls(self, host: str) -> Set[str]:
        rows = self._read("SELECT url FROM crawl_dead_urls WHERE host = %s", (host,))
        return {row[0] for row in rows}

    def save_hub(self, host: str, url: str, source: str, confidence: float) -> None:
        sql = """
            INSERT INTO crawl_hubs (host, url, source, confidence, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
                source = IF(VALUES(confidence) > confidence, VALUES(source), source),
                confidence = GREATEST(confidence, VALUES(confidence)),
                updated_at = VALUES(updated_at)
        """
        self._write(sql, (host, url, source, confidence, datetime.now(timezone.utc)))

    def hub_candidates(self, host: str, limit: int = 100) -> List[Dict[str, Any]]:
        sql = """
            SELECT url, source, confidence FROM crawl_hubs
            WHERE host = %s ORDER BY confidence DESC LIMIT %s
        """
        rows = self._read(sql, (host, int(limit)))
        return [{"url": r[0], "source": r[1], "confidence": float(r[2])} for r in rows]

    def upsert_signature(self, host: str, signature: PatternSignature) -> None:
        sql = """
            INSERT INTO crawl_signatures (host, signature_hash, confidence, observed_count, example_urls)
            VALUES (%s, %s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
                confidence = VALUES(confidence),
                observed_count = VALUES(observed_count),
                example_urls = VALUES(example_urls)
        """
        self._write(sql, (host, signature.hash, signature.confidence, signature.observed_count,
                          json.dumps(signature.example_urls)))

    def load_signatures(self, host: str) -> List[PatternSignature]:
        sql = """
            SELECT signature_hash, confidence, observed_count, example_urls
            FROM crawl_signatures WHERE host = %s
        """
        return [
            PatternSignature(hash=r[0], confidence=float(r[1]), observed_count=int(r[2]),
                             example_urls=json.loads(r[3]) if r[3] else [])
            for r in self._read(sql, (host,))
        ]

    def record_page_analysis(self, url: str, signature_hash: str, confidence: float) -> None:
        sql = """
            INSERT INTO crawl_page_analysis (url, host, signature_hash, confidence, analyzed_at)
            VALUES (%s, %s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
                signature_hash = VALUES(signature_hash),
                confidence = VALUES(confidence),
                analyzed_at = VALUES(analyzed_at)
        """
        self._write(sql, (url, host_of(url), signature_hash, confidence, datetime.now(timezone.utc)))

    def pages_needing_reanalysis(self, host: str, max_confidence: float, limit: int) -> List[str]:
        sql = """
            SELECT url FROM crawl_page_analysis
            WHERE host = %s AND confidence < %s
            ORDER BY confidence ASC LIMIT %s
        """
        return [r[0] for r in self._read(sql, (host, max_confidence, int(limit)))]

    def save_decision_trace(self, trace: Dict[str, Any]) -> None:
        sql = """
            INSERT INTO crawl_decision_traces (job_id, kind, message, details, created_at)
            VALUES (%s, %s, %s, %s, %s)
        """
        self._write(sql, (trace.get("jobId"), trace.get("kind"), trace.get("message"),
                          json.dumps(trace.get("details") or {}, default=str), datetime.now(timezone.utc)))
