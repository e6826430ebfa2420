"""
Statement catalog for the Pages store.

Statements are addressed by SqlQuery id; the SQL text can be overridden
per deployment with a JSON file mapping ids to SQL:

    {"GET_PAGE": "select id, content from Pages where name = ? order by id desc limit 1"}

Result columns are read by name (case-insensitive): id, name, content.
"""

import orjson
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from wiki.config import ConfigError


class SqlQuery(str, Enum):
    CREATE_PAGES_TABLE = "CREATE_PAGES_TABLE"
    ALL_PAGES = "ALL_PAGES"
    ALL_PAGES_DATA = "ALL_PAGES_DATA"
    GET_PAGE = "GET_PAGE"
    GET_PAGE_BY_ID = "GET_PAGE_BY_ID"
    CREATE_PAGE = "CREATE_PAGE"
    SAVE_PAGE = "SAVE_PAGE"
    DELETE_PAGE = "DELETE_PAGE"


# AUTOINCREMENT keeps ids from being reused after a delete.
# GET_PAGE picks the lowest id when names collide.
DEFAULT_SQL_QUERIES: Dict[SqlQuery, str] = {
    SqlQuery.CREATE_PAGES_TABLE: (
        "create table if not exists Pages ("
        "id integer primary key autoincrement, "
        "name text not null, "
        "content text not null)"
    ),
    SqlQuery.ALL_PAGES: "select name from Pages",
    SqlQuery.ALL_PAGES_DATA: "select id, name from Pages",
    SqlQuery.GET_PAGE: "select id, content from Pages where name = ? order by id limit 1",
    SqlQuery.GET_PAGE_BY_ID: "select id, name, content from Pages where id = ?",
    SqlQuery.CREATE_PAGE: "insert into Pages (name, content) values (?, ?)",
    SqlQuery.SAVE_PAGE: "update Pages set content = ? where id = ?",
    SqlQuery.DELETE_PAGE: "delete from Pages where id = ?",
}


def loadSqlQueries(queriesFile: Optional[str] = None) -> Dict[SqlQuery, str]:
    """Default statements, with overrides from queriesFile applied"""
    queries = dict(DEFAULT_SQL_QUERIES)
    if not queriesFile:
        return queries

    try:
        overrides = orjson.loads(Path(queriesFile).read_bytes())
    except FileNotFoundError:
        raise ConfigError(f"SQL queries file not found: {queriesFile}") from None
    except orjson.JSONDecodeError as e:
        raise ConfigError(f"SQL queries file is not valid JSON: {queriesFile}: {e}") from e

    if not isinstance(overrides, dict):
        raise ConfigError(f"SQL queries file must hold a JSON object: {queriesFile}")

    for key, sql in overrides.items():
        try:
            queryId = SqlQuery(key)
        except ValueError:
            raise ConfigError(f"Unknown SQL query id '{key}' in {queriesFile}") from None
        if not isinstance(sql, str) or not sql.strip():
            raise ConfigError(f"SQL for '{key}' in {queriesFile} must be a non-empty string")
        queries[queryId] = sql

    return queries
