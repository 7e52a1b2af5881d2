"""
FastAPI layer for the AI run gateway.

Exposes:
- `/ai/run`                  : passthrough to any model on the model service
- `/ai/vision/person-detect` : URL or multipart upload, returns `isPerson`
- `/health`                  : Basic health check
"""
