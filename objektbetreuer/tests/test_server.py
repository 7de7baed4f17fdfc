from objektbetreuer import main


def test_run_serves_app_on_configured_port(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setenv("PORT", "9123")
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    main.run()

    app, kwargs = calls[0]
    assert app is main.app
    assert kwargs == {"host": "127.0.0.1", "port": 9123, "log_level": "warning"}


def test_port_defaults_to_8000(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    assert main.Settings.from_env().port == 8000
