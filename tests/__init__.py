"""Test suite for the intakeforms engine.

This package contains tests for:
- Form catalog and completion rules
- Sanitization and validation engine
- Lifecycle controller (guard, derivation, state machine)
- Persistence gateway (save, autosave, bulk, infra errors)
- Submission orchestration and approval
- Synchronization client and transports
- Event system
- HTTP surface
"""
