"""
tests/
------
RecordVerify - Test Package
----------------------------
Test suites for the RecordVerify health record service. External services
(unstructured.io, Anthropic, Retell, S3) are always mocked; shared test
doubles live in fakes.py.

Test Modules:
    - test_json_payload.py: Lenient JSON extraction from model output
    - test_document_extractor.py: Extraction, hi_res/auto retry, fallbacks
    - test_record_structurer.py: Structuring and its skeleton fallback
    - test_transcript_analyzer.py: Transcript rendering and analysis
    - test_call_client.py: Retell client over httpx.MockTransport
    - test_call_polling.py: Bounded status polling
    - test_corrections.py: Allow-listed correction merge
    - test_record_store.py: SQLite persistence and status guards
    - test_archive_store.py: S3 archival
    - test_intake.py: Upload validation
    - test_pipeline.py: End-to-end upload pipeline
    - test_record_service.py: Record reads, delete, verification
    - test_main.py: FastAPI routes

Project: RecordVerify - Patient-Verified Health Records
"""
