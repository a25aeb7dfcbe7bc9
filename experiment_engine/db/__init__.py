# experiment_engine/db/__init__.py
"""データベース接続モジュール"""

from experiment_engine.db.connection import DatabaseConnection, schema_table_names

__all__ = [
    "DatabaseConnection",
    "schema_table_names",
]
