import pytest

from utils.request_guards import WriteRateLimiter, limit_text
from utils.errors import AppError, ValidationError
from utils.settings import load_settings

ENV_NAMES = [
    "GALLERY_DIR",
    "GALLERY_INDEX_FILE",
    "LOCAL_API_TOKEN",
    "ALLOW_INSECURE_LOCAL",
    "IMAGE_FETCH_TIMEOUT_MS",
    "IMAGE_FETCH_MAX_BYTES",
    "WRITE_RATE_LIMIT_WINDOW_MS",
    "WRITE_RATE_LIMIT_MAX",
    "PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("utils.settings.load_dotenv", lambda: None)


def test_defaults_follow_gallery_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("GALLERY_DIR", str(tmp_path / "store"))

    settings = load_settings()

    assert settings.gallery_dir == (tmp_path / "store").resolve()
    assert settings.index_file == settings.gallery_dir / "index.json"
    assert settings.port == 8086
    assert settings.image_fetch_timeout == 15.0
    assert settings.image_fetch_max_bytes == 15 * 1024 * 1024
    assert settings.local_api_token == ""
    assert settings.allow_insecure_local is False


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("GALLERY_DIR", str(tmp_path))
    monkeypatch.setenv("GALLERY_INDEX_FILE", str(tmp_path / "meta" / "gallery.json"))
    monkeypatch.setenv("LOCAL_API_TOKEN", "  tok  ")
    monkeypatch.setenv("ALLOW_INSECURE_LOCAL", "TRUE")
    monkeypatch.setenv("IMAGE_FETCH_TIMEOUT_MS", "2500")
    monkeypatch.setenv("WRITE_RATE_LIMIT_WINDOW_MS", "10")
    monkeypatch.setenv("WRITE_RATE_LIMIT_MAX", "5")

    settings = load_settings()

    assert settings.index_file == (tmp_path / "meta" / "gallery.json").resolve()
    assert settings.local_api_token == "tok"
    assert settings.allow_insecure_local is True
    assert settings.image_fetch_timeout == 2.5
    assert settings.write_rate_limit_window == 1.0
    assert settings.write_rate_limit_max == 5


def test_gallery_dir_pointing_at_a_file_is_rejected(tmp_path, monkeypatch):
    target = tmp_path / "not-a-dir"
    target.write_text("x", encoding="utf-8")
    monkeypatch.setenv("GALLERY_DIR", str(target))

    with pytest.raises(RuntimeError):
        load_settings()


def test_non_numeric_values_are_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("PORT", "eighty")

    with pytest.raises(RuntimeError):
        load_settings(gallery_dir=tmp_path)


def test_rate_limiter_window_slides():
    limiter = WriteRateLimiter(window=10, max_requests=2)

    limiter.hit("1.2.3.4", now=0)
    limiter.hit("1.2.3.4", now=1)
    with pytest.raises(AppError) as exc_info:
        limiter.hit("1.2.3.4", now=5)
    limiter.hit("5.6.7.8", now=5)
    limiter.hit("1.2.3.4", now=10.5)

    assert exc_info.value.status == 429
    assert exc_info.value.code == "RATE_LIMITED"


def test_limit_text_strips_and_bounds():
    assert limit_text("  hi  ", 2, "prompt") == "hi"
    assert limit_text(None, 2, "prompt") == ""
    with pytest.raises(ValidationError) as exc_info:
        limit_text("abc", 2, "prompt")
    assert exc_info.value.code == "FIELD_TOO_LONG"


def test_rate_limiter_forgets_idle_clients():
    limiter = WriteRateLimiter(window=10, max_requests=2)

    limiter.hit("1.2.3.4", now=0)
    limiter.hit("5.6.7.8", now=8)
    limiter.hit("9.9.9.9", now=12)

    assert sorted(limiter._buckets) == ["5.6.7.8", "9.9.9.9"]
