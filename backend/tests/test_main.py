import sys
from importlib import reload
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.iptv_player import schemas  # noqa: E402
from backend.iptv_player.auth import HTTPException  # noqa: E402
from backend.iptv_player.playlist import PlaylistFetchError  # noqa: E402

PLAYLIST = """#EXTM3U
#EXTINF:-1 group-title="News",BBC
http://x/bbc.m3u8
#EXTINF:-1 group-title="Sports",Sky Sports
#KODIPROP:inputstream.adaptive.license_key=kid:key
http://x/sky.mpd
"""


class DummyClient:
    def __init__(self, host: str) -> None:
        self.host = host


class DummyRequest:
    def __init__(self, host: str, user_agent: str = "pytest-agent", forwarded_for: str = "") -> None:
        self.client = DummyClient(host)
        self.headers = {"user-agent": user_agent}
        if forwarded_for:
            self.headers["x-forwarded-for"] = forwarded_for


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    monkeypatch.delenv("IPTV_DATABASE_URL", raising=False)
    monkeypatch.setenv("IPTV_STATS_FILE", str(tmp_path / "iptvstats.json"))
    monkeypatch.setenv("IPTV_STATS_RATE_LIMIT", "2")
    monkeypatch.setenv("IPTV_STATS_RATE_WINDOW", "60")
    monkeypatch.setenv("IPTV_PLAYLIST_URL", "http://playlist.example.com/list.m3u")

    from backend.iptv_player import main

    reload(main)
    main.reset_application_state()

    yield main

    main.reset_application_state()


@pytest.fixture
def database_app_module(tmp_path, monkeypatch, app_module):
    monkeypatch.setenv("IPTV_DATABASE_URL", f"sqlite:///{tmp_path / 'stats.db'}")

    from backend.iptv_player import main

    reload(main)
    yield main
    main.db_engine.dispose()


def test_visit_endpoint_records_channel_play(app_module):
    main = app_module
    request = DummyRequest("10.0.0.1")

    main.record_visit(schemas.VisitIn(channel_name="BBC"), request)
    result = main.record_visit(schemas.VisitIn(user_agent="pytest-agent", channel_name="BBC"), request)

    assert result.success is True
    assert result.storage_used == "local"
    assert (result.visits, result.unique_visitors, result.channels_played) == (2, 1, 2)


def test_visit_body_uses_camel_case_aliases():
    visit = schemas.VisitIn.model_validate({"userAgent": "UA", "channelName": "BBC"})

    assert visit.user_agent == "UA"
    assert visit.channel_name == "BBC"


def test_forwarded_for_header_identifies_visitor(app_module):
    main = app_module

    main.record_visit(schemas.VisitIn(), DummyRequest("proxy", forwarded_for="1.1.1.1, proxy"))
    result = main.record_visit(schemas.VisitIn(), DummyRequest("proxy", forwarded_for="2.2.2.2, proxy"))

    assert result.unique_visitors == 2


def test_playlist_endpoint_records_visit_and_returns_url(app_module):
    main = app_module

    response = main.get_playlist(DummyRequest("10.0.0.2"))

    assert response.playlist_url == "http://playlist.example.com/list.m3u"
    [today] = main.stats_store.get_stats(1)
    assert today.visits == 1


def test_channels_endpoint_parses_and_filters(app_module, monkeypatch):
    main = app_module
    monkeypatch.setattr(main, "fetch_playlist", lambda url, timeout: PLAYLIST)

    response = main.list_channels(search=None, group="Sports", sort=None)

    assert response.total == 1
    assert response.groups == ["News", "Sports"]
    [channel] = response.channels
    assert channel.name == "Sky Sports"
    assert (channel.drm_key_id, channel.drm_key) == ("kid", "key")
    assert channel.model_dump(by_alias=True)["manifestUri"] == "http://x/sky.mpd"


def test_channels_endpoint_maps_fetch_errors(app_module, monkeypatch):
    main = app_module

    def failing_fetch(url, timeout):
        raise PlaylistFetchError("unreachable")

    monkeypatch.setattr(main, "fetch_playlist", failing_fetch)

    with pytest.raises(HTTPException) as excinfo:
        main.list_channels(search=None, group=None, sort=None)
    assert excinfo.value.status_code == 502


def test_admin_login(app_module, monkeypatch):
    main = app_module
    monkeypatch.setenv("IPTV_ADMIN_PASSWORD", "s3cret")

    response = main.admin_login(schemas.LoginIn(password="s3cret"), DummyRequest("admin"))
    assert response.token
    assert response.expires_in == 24 * 60 * 60

    with pytest.raises(HTTPException) as excinfo:
        main.admin_login(schemas.LoginIn(password="wrong"), DummyRequest("admin"))
    assert excinfo.value.status_code == 401


def test_admin_stats_returns_requested_days(app_module):
    main = app_module
    main.record_visit(schemas.VisitIn(channel_name="BBC"), DummyRequest("10.0.0.3"))

    response = main.admin_stats(request=DummyRequest("admin"), days=7, _={})

    assert response.requested_days == 7
    assert [entry.visits for entry in response.data] == [1]
    assert response.data[0].top_channels[0].name == "BBC"


def test_admin_stats_on_empty_store_returns_zeroed_day(app_module):
    main = app_module

    response = main.admin_stats(request=DummyRequest("admin"), days=7, _={})

    assert len(response.data) == 1
    assert response.data[0].visits == 0


def test_admin_summary(app_module):
    main = app_module
    for _ in range(3):
        main.record_visit(schemas.VisitIn(channel_name="BBC"), DummyRequest("10.0.0.4"))

    response = main.admin_summary(request=DummyRequest("admin"), _={})

    assert response.data.total_visits == 3
    assert response.data.average_daily_visits == 3
    assert response.data.most_popular_channels[0].play_count == 3


def test_admin_rate_limit_enforced(app_module):
    main = app_module
    request = DummyRequest("rate-limit")

    main.admin_stats(request=request, days=7, _={})
    main.admin_summary(request=request, _={})
    with pytest.raises(HTTPException) as excinfo:
        main.admin_stats(request=request, days=7, _={})

    assert excinfo.value.status_code == 429
    assert excinfo.value.detail == "Rate limit exceeded"


def test_cleanup_without_database_is_a_no_op(app_module):
    response = app_module.admin_cleanup(_={})

    assert response.success is True
    assert response.deleted == 0


def test_health_reports_disabled_database(app_module):
    assert app_module.health_check().database == "disabled"


def test_database_backend_is_used_when_configured(database_app_module, tmp_path):
    main = database_app_module

    result = main.record_visit(schemas.VisitIn(channel_name="BBC"), DummyRequest("10.0.0.5"))

    assert result.storage_used == "database"
    assert main.health_check().database == "connected"
    assert main.admin_cleanup(_={}).deleted == 0
    assert not (tmp_path / "iptvstats.json").exists()


def test_rate_limiter_forgets_expired_clients(app_module):
    limiter = app_module.FixedWindowRateLimiter(max_requests=1, window_seconds=0)

    limiter.check("10.0.0.1")
    limiter.check("10.0.0.2")

    assert list(limiter._counters) == ["10.0.0.2"]
