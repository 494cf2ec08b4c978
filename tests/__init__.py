"""
tritoncli test suite.

Tests are organized by layer:
    tests/unit/         Unit tests (in-memory CloudAPI via httpx.MockTransport)
    tests/integration/  CLI tests driven through click's CliRunner

Run all tests:
    pytest

Run with coverage:
    pytest --cov=tritoncli

Run unit tests only:
    pytest tests/unit/
"""
