"""
Test Suite for the botcheck analysis worker

Test Organization:
- test_entropy.py: Entropy screen scoring, banding and aggregate stats
- test_inference_client.py: Inference transport retry/backoff and envelopes
- test_classifiers.py: Label mapping, generation signal, batch failure isolation
- test_context.py: Parent-chain resolution and context text assembly
- test_scoring.py: Escalation, composite combination and user aggregation
- test_orchestrator.py: Cascade scenarios, idempotent claim, failure handling
- test_analysis_models.py: Stage promotion and fetch cap on the dataclasses
- test_poller.py: Queue polling loop
- test_reddit_client.py: Reddit content source (authenticated and public paths)
- test_ai_client.py: OpenAI generation backend and cost tracking
- test_config.py: Settings and scoring configuration loading
- test_connection_manager.py: SQLite connections, schema and system_config
- test_storage.py: Request claims and result rows
- backend/utils/test_errors.py: Backoff and warnings utilities
- backend/utils/test_logging_config.py: structlog JSON output
- test_fastapi_app.py: HTTP trigger and health endpoints

Run all tests:
    python -m pytest tests/ -v
"""
