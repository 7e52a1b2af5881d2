"""
Person-detection pipeline.

Contains:
- `state`      : Typed `DetectionState` definition
- `ingest`     : image fetch / upload validation / format normalization
- `heuristics` : bounding-box and vision-language interpretation
- `nodes`      : LangGraph node callables operating over `DetectionState`
- `graph`      : StateGraph builder and compiled `pipeline`
"""
