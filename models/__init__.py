"""
Model execution package.

This module exposes:
- `ModelService` / `WorkersAIService` (`service`) : the external model runner
- `get_model_service` : singleton accessor built from settings
- `run_model` (`invoker`) : deadline-bounded invocation returning a `Result`
"""
