"""CLI ユーティリティ"""
