"""Tests for the uvicorn entrypoint."""

from unittest.mock import patch


def test_run_serves_application_on_configured_address(settings, monkeypatch):
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("PORT", "9000")
    from subsync import main

    with patch.object(main.uvicorn, "run") as serve:
        main.run()

    serve.assert_called_once_with("subsync.main:app", host="127.0.0.1", port=9000)
