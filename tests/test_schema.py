"""sql/schema.sql のテスト."""

import re
from pathlib import Path

SCHEMA_SQL = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"


def _function_body(name):
    text = SCHEMA_SQL.read_text(encoding="utf-8")
    match = re.search(rf"create or replace function {name}\(.*?\$\$;", text, re.DOTALL)
    assert match is not None
    return match.group(0)


class TestReplaceCurrentRankings:
    """replace_current_rankings 関数のテスト."""

    def test_tables_resolved_from_function_schema(self):
        """DB_SCHEMA を変えても動くよう、スキーマ名を直接書かない."""
        body = _function_body("replace_current_rankings")

        assert "set search_path from current" in body
        assert "rank_tracker." not in body


class TestCollectionJobs:
    """collection_jobs テーブルのテスト."""

    def test_has_heartbeat_column(self):
        text = SCHEMA_SQL.read_text(encoding="utf-8")

        assert "heartbeat_at timestamptz" in text
