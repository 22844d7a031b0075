# priorities/tests/__init__.py
"""
Priorities App Test Suite
=========================

Unit and integration tests for the strategic prioritization engine.

Modules:
--------
- test_engine: Priority formula, quadrants, heuristics, ranking strategies, clustering
- test_dependencies: Kahn ordering, cycle tolerance, blocked tasks
- test_movement: Movement classification and highlight windows
- test_retry_queue: Backoff, exhaustion, cancellation, reattachment
- test_overrides: Score/override stores and the override lifecycle
- test_orchestration: Estimators, scoring pass, engine facade, Celery task

Running Tests:
--------------
    # Run all priorities tests
    python manage.py test priorities

    # Run a specific module
    python manage.py test priorities.tests.test_retry_queue

    # Or through pytest-django from the repository root
    pytest
"""
