"""
tests/
------
FHIR Conditional Upsert Service — Test Package
----------------------------------------------
Contains the pytest suites for the service.

Test Modules:
    - test_conditional_upsert.py: ConditionalUpsertEngine against stub gateways
    - test_database.py: SQLite store, plus the engine end to end over it
    - test_fhir_client.py: remote FHIR server client (httpx.MockTransport)
    - test_export_status.py: export job status polling
    - test_dispatcher.py: request routing
    - test_resources.py: pydantic contracts and weak ETags
    - test_config.py: environment settings
    - test_main.py: FastAPI endpoints

Project: FHIR Conditional Upsert Service
"""
