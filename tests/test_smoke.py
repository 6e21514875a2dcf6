"""
Smoke test: ensure packages import cleanly.

This test only imports packages under `src/` and the server module to
validate packaging and basic syntax.
"""
import importlib


def test_import_all_submodules():
    # Import each submodule to ensure no syntax errors exist
    modules = [
        "src.bridge",
        "src.bridge.status_lines",
        "src.bridge.status_reader",
        "src.bridge.status_writer",
        "src.copier",
        "src.copier.errors",
        "src.copier.config",
        "src.copier.logging_utils",
        "src.copier.reconciler",
        "src.copier.registry",
        "src.copier.notifier",
        "src.copier.poller",
        "core.accounts_server",
    ]

    for m in modules:
        importlib.import_module(m)

    assert True
