#!/usr/bin/env python3
"""
Street retreats: inscribed circles for city blocks, computed in PostGIS.

- Recreates the result table (distance, pgeom, cgeom)
- Fetches every block id from the source polygon table
- Runs one grid-sampling query per block, in order, which inserts the
  point farthest from the block boundary buffered into a circle

Usage:
  python3 street_retreats.py \
    --host localhost --port 5432 --db belgium-osm --user postgres --password secret \
    --block-table city_blocks --city-table city_polygon --result-table streets_retreats
"""

from __future__ import annotations

import argparse
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import psycopg2
from dotenv import load_dotenv


DEFAULT_BLOCK_TABLE = "city_blocks"
DEFAULT_CITY_TABLE = "city_polygon"
DEFAULT_RESULT_TABLE = "streets_retreats"
DEFAULT_GRID_FUNCTION = "I_Grid_Point_Distance"
DEFAULT_GRID_STEP = 5.0

ON_BLOCK_ERROR_CHOICES = ("continue", "abort")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_BAD_CONFIG = 2
EXIT_BLOCK_FAILURES = 3

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?")

RESULT_COLUMNS = (
    ("distance", "float8"),
    ("pgeom", "geometry"),
    ("cgeom", "geometry"),
)

GRID_FUNCTION_EXISTS_SQL = """
SELECT count(*)
FROM pg_proc
WHERE lower(proname) = lower(%s);
"""


class PipelineError(RuntimeError):
    """A step failed in a way the run cannot recover from."""

    def __init__(self, stage: str, message: str, summary: Optional["RunSummary"] = None):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.summary = summary


@dataclass(frozen=True)
class PipelineConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "postgres"
    user: str = "postgres"
    password: str = ""
    block_table: str = DEFAULT_BLOCK_TABLE
    block_id_column: str = "id"
    block_geom_column: str = "pgeom"
    city_table: str = DEFAULT_CITY_TABLE
    city_geom_column: str = "cgeom"
    result_table: str = DEFAULT_RESULT_TABLE
    grid_function: str = DEFAULT_GRID_FUNCTION
    grid_dx: float = DEFAULT_GRID_STEP
    grid_dy: float = DEFAULT_GRID_STEP
    on_block_error: str = "continue"
    verify_prerequisites: bool = True

    def __post_init__(self) -> None:
        for name in (
            "block_table",
            "block_id_column",
            "block_geom_column",
            "city_table",
            "city_geom_column",
            "result_table",
            "grid_function",
        ):
            validate_identifier(getattr(self, name), name)
        if self.grid_dx <= 0 or self.grid_dy <= 0:
            raise ValueError(f"grid steps must be positive, got dx={self.grid_dx} dy={self.grid_dy}")
        if self.on_block_error not in ON_BLOCK_ERROR_CHOICES:
            raise ValueError(
                f"on_block_error must be one of {ON_BLOCK_ERROR_CHOICES}, got {self.on_block_error!r}"
            )


@dataclass
class BlockResult:
    block_id: Any
    ok: bool
    rows_inserted: Optional[int] = None
    error: Optional[str] = None


@dataclass
class RunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    empty: int = 0
    failures: list[BlockResult] = field(default_factory=list)

    def record(self, result: BlockResult) -> None:
        self.processed += 1
        if result.ok:
            self.succeeded += 1
            if result.rows_inserted == 0:
                self.empty += 1
        else:
            self.failed += 1
            self.failures.append(result)


def validate_identifier(value: str, what: str = "identifier") -> str:
    # Identifiers are spliced into SQL text, values are always bound.
    if not isinstance(value, str) or not _IDENTIFIER_RE.fullmatch(value):
        raise ValueError(f"invalid SQL {what}: {value!r}")
    return value


def warn(message: str) -> None:
    print(f"WARNING: {message}", file=sys.stderr, flush=True)


def connect(config: PipelineConfig):
    return psycopg2.connect(
        host=config.host,
        port=config.port,
        dbname=config.dbname,
        user=config.user,
        password=config.password,
    )


def rollback_quietly(conn) -> bool:
    """Roll back if the connection is still usable; False when it is gone."""
    if conn.closed:
        return False
    try:
        conn.rollback()
    except psycopg2.Error as exc:
        warn(f"rollback failed: {exc}")
        return False
    return True


def fetch_one(cur, sql: str, params=None) -> Any:
    cur.execute(sql, params or ())
    row = cur.fetchone()
    return row[0] if row else None


def build_recreate_sql(config: PipelineConfig) -> str:
    columns = ", ".join(f"{name} {sql_type}" for name, sql_type in RESULT_COLUMNS)
    return (
        f"DROP TABLE IF EXISTS {config.result_table};\n"
        f"CREATE TABLE {config.result_table} ({columns});"
    )


def build_block_ids_sql(config: PipelineConfig) -> str:
    return f"SELECT {config.block_id_column} FROM {config.block_table};"


def build_block_sql(config: PipelineConfig) -> str:
    """
    Per-block statement. Parameters, in order: block id, grid dx, grid dy.

    Block geometries are expected in EPSG:3857; distances are geodesic
    metres and the circle is written back in EPSG:3857.
    """
    return f"""
WITH
polygon AS (
  SELECT {config.block_geom_column} AS pgeom
  FROM {config.block_table}
  WHERE {config.block_id_column} = %s
  LIMIT 1
),
polygon_within_city AS (
  SELECT ST_Intersection(c.{config.city_geom_column}, p.pgeom) AS geom
  FROM {config.city_table} c, polygon p
),
candidates AS (
  SELECT (ST_DumpPoints({config.grid_function}(geom, %s, %s))).geom AS geom
  FROM polygon_within_city
),
lines AS (
  SELECT ST_Boundary(pgeom) AS geom
  FROM polygon
),
farthest AS (
  SELECT
    ST_Distance(
      ST_Transform(l.geom, 4326)::geography,
      ST_Transform(c.geom, 4326)::geography
    ) AS distance,
    c.geom
  FROM lines l, candidates c
  ORDER BY distance DESC
  LIMIT 1
),
circle AS (
  SELECT
    f.distance,
    ST_Transform(
      ST_Buffer(ST_Transform(f.geom, 4326)::geography, f.distance)::geometry,
      3857
    ) AS geom
  FROM farthest f
)
INSERT INTO {config.result_table} (distance, pgeom, cgeom)
SELECT circle.distance, polygon.pgeom, circle.geom
FROM circle, polygon;
"""


def check_prerequisites(cur, config: PipelineConfig) -> list[str]:
    problems: list[str] = []
    try:
        for label, table in (("block table", config.block_table), ("city table", config.city_table)):
            if fetch_one(cur, "SELECT to_regclass(%s);", (table,)) is None:
                problems.append(f"{label} '{table}' does not exist")
        function_name = config.grid_function.split(".")[-1]
        if not fetch_one(cur, GRID_FUNCTION_EXISTS_SQL, (function_name,)):
            problems.append(f"grid function '{config.grid_function}' is not installed")
    except psycopg2.Error as exc:
        raise PipelineError("check", f"prerequisite lookup failed: {exc}") from exc
    return problems


def recreate_result_table(conn, cur, config: PipelineConfig) -> None:
    try:
        cur.execute(build_recreate_sql(config))
        conn.commit()
    except psycopg2.Error as exc:
        raise PipelineError("recreate", f"could not recreate {config.result_table}: {exc}") from exc


def fetch_block_ids(cur, config: PipelineConfig) -> list[Any]:
    try:
        cur.execute(build_block_ids_sql(config))
        rows = cur.fetchall()
    except psycopg2.Error as exc:
        raise PipelineError("enumerate", f"could not read {config.block_table}: {exc}") from exc
    return [row[0] for row in rows]


def process_block(conn, cur, config: PipelineConfig, block_id: Any) -> BlockResult:
    print(f"city block {block_id}", flush=True)
    try:
        cur.execute(build_block_sql(config), (block_id, config.grid_dx, config.grid_dy))
        rowcount = cur.rowcount
        conn.commit()
    except psycopg2.Error as exc:
        message = str(exc).strip() or exc.__class__.__name__
        if isinstance(exc, psycopg2.InterfaceError) or not rollback_quietly(conn):
            raise PipelineError("connect", f"connection lost at city block {block_id}: {message}") from exc
        warn(f"city block {block_id} failed: {message}")
        return BlockResult(block_id=block_id, ok=False, error=message)

    rows_inserted = rowcount if rowcount is not None and rowcount >= 0 else None
    if rows_inserted == 0:
        warn(f"city block {block_id} produced no circle (no grid point inside the city area).")
    return BlockResult(block_id=block_id, ok=True, rows_inserted=rows_inserted)


def process_blocks(conn, cur, config: PipelineConfig, block_ids: Sequence[Any]) -> RunSummary:
    summary = RunSummary()
    for block_id in block_ids:
        try:
            result = process_block(conn, cur, config, block_id)
        except PipelineError as exc:
            summary.record(BlockResult(block_id=block_id, ok=False, error=str(exc)))
            exc.summary = summary
            raise
        summary.record(result)
        if not result.ok and config.on_block_error == "abort":
            raise PipelineError("block", f"city block {block_id} failed: {result.error}", summary=summary)
    return summary


def run(conn, config: PipelineConfig) -> RunSummary:
    with conn.cursor() as cur:
        if config.verify_prerequisites:
            print("1) Checking prerequisites...", flush=True)
            problems = check_prerequisites(cur, config)
            if problems:
                raise PipelineError("check", "; ".join(problems))
        else:
            print("1) Skipping prerequisite checks.", flush=True)

        print(f"2) Recreating result table {config.result_table}...", flush=True)
        recreate_result_table(conn, cur, config)

        print(f"3) Fetching block ids from {config.block_table}...", flush=True)
        block_ids = fetch_block_ids(cur, config)
        print(f"   Blocks: {len(block_ids)}", flush=True)
        if not block_ids:
            warn(f"{config.block_table} is empty; {config.result_table} will stay empty.")

        print(f"4) Computing inscribed circles (grid {config.grid_dx} x {config.grid_dy})...", flush=True)
        return process_blocks(conn, cur, config, block_ids)


def print_summary(summary: RunSummary) -> None:
    print(
        "Summary: "
        f"processed={summary.processed}, succeeded={summary.succeeded}, "
        f"failed={summary.failed}, empty={summary.empty}",
        flush=True,
    )
    for failure in summary.failures:
        warn(f"failed city block {failure.block_id}: {failure.error}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Compute the inscribed circle of every city block with PostGIS.",
    )
    p.add_argument("--host", default=os.environ.get("PGHOST", "localhost"))
    p.add_argument("--port", type=int, default=int(os.environ.get("PGPORT", "5432")))
    p.add_argument("--db", default=os.environ.get("PGDATABASE", "postgres"))
    p.add_argument("--user", default=os.environ.get("PGUSER", "postgres"))
    p.add_argument("--password", default=os.environ.get("PGPASSWORD", ""))
    p.add_argument("--block-table", default=DEFAULT_BLOCK_TABLE, help="Source table of block polygons.")
    p.add_argument("--block-id-column", default="id")
    p.add_argument("--block-geom-column", default="pgeom")
    p.add_argument("--city-table", default=DEFAULT_CITY_TABLE, help="Reference polygon clipping every block.")
    p.add_argument("--city-geom-column", default="cgeom")
    p.add_argument("--result-table", default=DEFAULT_RESULT_TABLE, help="Destination table, recreated every run.")
    p.add_argument("--grid-function", default=DEFAULT_GRID_FUNCTION, help="SQL function generating grid points.")
    p.add_argument("--grid-dx", type=float, default=DEFAULT_GRID_STEP, help="Grid spacing along x.")
    p.add_argument("--grid-dy", type=float, default=DEFAULT_GRID_STEP, help="Grid spacing along y.")
    p.add_argument(
        "--on-block-error",
        default="continue",
        choices=ON_BLOCK_ERROR_CHOICES,
        help="Keep going after a failed block, or stop the run.",
    )
    p.add_argument(
        "--strict",
        action="store_true",
        help=f"Exit with status {EXIT_BLOCK_FAILURES} when any block failed.",
    )
    p.add_argument(
        "--skip-checks",
        action="store_true",
        help="Do not verify that the tables and grid function exist before running.",
    )
    return p


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        host=args.host,
        port=args.port,
        dbname=args.db,
        user=args.user,
        password=args.password,
        block_table=args.block_table,
        block_id_column=args.block_id_column,
        block_geom_column=args.block_geom_column,
        city_table=args.city_table,
        city_geom_column=args.city_geom_column,
        result_table=args.result_table,
        grid_function=args.grid_function,
        grid_dx=args.grid_dx,
        grid_dy=args.grid_dy,
        on_block_error=args.on_block_error,
        verify_prerequisites=not args.skip_checks,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr, flush=True)
        return EXIT_BAD_CONFIG

    print(f"Connecting to Postgres: {config.user}@{config.host}:{config.port}/{config.dbname}", flush=True)
    try:
        conn = connect(config)
    except psycopg2.Error as e:
        print(f"ERROR: [connect] {e}", file=sys.stderr, flush=True)
        return EXIT_FATAL
    conn.autocommit = False

    try:
        summary = run(conn, config)
        print_summary(summary)
        print("DONE", flush=True)
        if args.strict and summary.failed:
            return EXIT_BLOCK_FAILURES
        return EXIT_OK
    except PipelineError as e:
        rollback_quietly(conn)
        if e.summary is not None:
            print_summary(e.summary)
        print(f"\nERROR: {e}", file=sys.stderr, flush=True)
        return EXIT_FATAL
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
