"""Pipeline components.

This package contains the Arrow IPC stream encoder and decoder, row batching,
bounded table materialization, the DuckDB query stage and the result encoder.
"""
