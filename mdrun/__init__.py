# mdrun package
# Runs shell snippets embedded in Markdown documents, tracks per-document
# shell state across runs and records each block's latest outcome in a
# sidecar JSON file next to the document.

__version__ = "0.1.0"
