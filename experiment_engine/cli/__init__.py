# experiment_engine/cli/__init__.py
"""実験エンジン CLI"""
