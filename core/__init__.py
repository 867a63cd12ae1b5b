"""
source-radar core package.

Modules
───────
models      — Pydantic data models (SourceDescriptor, ExtractionRuleSet, ResultRecord, SourceBatch)
catalog     — Source manifest loading (index.json + config_<id>.json)
extractor   — Regex-driven result extraction, one interpreter for all sources
search      — Per-source query: URL template, bounded cancellable fetch, typed outcome
aggregator  — Concurrent fan-out / fan-in with incremental, superseding sessions
preferences — SQLite-backed search timeout and one-time hint flag
favorites   — SQLite-backed favorites keyed by URL
"""
