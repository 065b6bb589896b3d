from clinic_messaging import run
from clinic_messaging.core.config import get_settings


def test_main_starts_uvicorn_on_the_app(monkeypatch):
    calls = []
    monkeypatch.setattr(run.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    run.main()

    settings = get_settings()
    assert calls == [
        (
            "clinic_messaging.main:app",
            {
                "host": settings.host,
                "port": settings.port,
                "reload": settings.reload,
                "log_level": settings.log_level.lower(),
            },
        )
    ]
