"""Demonstration queries against the ``vectors`` extension."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.table import Table
from rich.text import Text

from embedded_vectors.postgres.pool import DatabasePool


logger = logging.getLogger(__name__)

CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS items (
    id bigserial PRIMARY KEY,
    embedding vector(3) NOT NULL
)
"""

INSERT_TEXT_LITERALS = "INSERT INTO items (embedding) VALUES ('[1,2,3]'), ('[4,5,6]')"
INSERT_ARRAY_CASTS = (
    "INSERT INTO items (embedding) VALUES (ARRAY[1, 2, 3]::real[]), (ARRAY[4, 5, 6]::real[])"
)

DISTANCE_QUERIES = (
    "SELECT '[1, 2, 3]'::vector <-> '[3, 2, 1]'::vector AS squared_euclidean_distance",
    "SELECT '[1, 2, 3]'::vector <#> '[3, 2, 1]'::vector AS negative_dot_product",
    "SELECT '[1, 2, 3]'::vector <=> '[3, 2, 1]'::vector AS cosine_distance",
)

NEAREST_QUERY = (
    "SELECT id, embedding::text AS embedding FROM items "
    "ORDER BY embedding <-> '[3,2,1]' LIMIT 5"
)


async def create_table_items(pool: DatabasePool) -> None:
    await pool.execute(CREATE_TABLE)


async def insert_vector_data(pool: DatabasePool) -> None:
    # Same rows through both ingestion paths: text literal and real[] cast.
    await pool.execute(INSERT_TEXT_LITERALS)
    await pool.execute(INSERT_ARRAY_CASTS)


async def demonstrate_vector_operations(
    pool: DatabasePool, console: Console
) -> list[tuple[str, float]]:
    results: list[tuple[str, float]] = []
    for query in DISTANCE_QUERIES:
        value = float(await pool.fetchval(query))
        console.print(f"{query}: {value:g}", markup=False, highlight=False)
        results.append((query, value))
    return results


async def search_similar_vectors(
    pool: DatabasePool, console: Console
) -> list[tuple[int, str]]:
    rows = [(int(r["id"]), str(r["embedding"])) for r in await pool.fetch(NEAREST_QUERY)]

    table = Table(title="Similar vectors")
    table.add_column("ID", justify="right")
    table.add_column("Embedding")
    for row_id, embedding in rows:
        table.add_row(Text(str(row_id)), Text(embedding))
    console.print(table)
    return rows


async def run_demo(pool: DatabasePool, console: Console) -> None:
    console.print("Creating table 'items' with vector column")
    await create_table_items(pool)

    console.print("Inserting vector data")
    await insert_vector_data(pool)

    console.print("Demonstrating vector operations")
    await demonstrate_vector_operations(pool, console)

    console.print("Searching for similar vectors")
    await search_similar_vectors(pool, console)
    logger.debug("Demo queries finished")
