"""Strataform CLI — Typer-based command-line interface.

Provides the ``strataform`` command with subcommands for validating a
configuration, planning, applying, destroying, refreshing, reading
outputs, and inspecting or repairing state.

All output uses Rich for formatted terminal display.
"""
