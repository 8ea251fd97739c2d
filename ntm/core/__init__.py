"""Dashboard core: pane model, status detection, view store and refresh orchestration."""
