import pytest

from config import Config
from models import CustomExtractorConfig, ExtractorChoice, FeedSpec, OutputMode

FEEDS_YAML = """
settings:
  fetch_since_hours: 12
  cover_date_color: Black
  add_date_in_cover: yes
feeds:
  - url: https://a.example.com/rss
    name: Alpha
    position: 2
    category: Tech
    concurrency_limit: 3
    extractor: text_only
  - url: https://b.example.com/rss
    extractor: Custom
    custom_config:
      selectors: ["article.main"]
      discard: [aside]
      output_mode: text
  - url: not-a-url
  - name: missing url
domain_overrides:
  Example.COM:
    extractor: Readability-alt
  bad.example.com:
    extractor: Custom
read_it_later:
  - https://saved.example.com/1
  - url: https://saved.example.com/2
    title: Second
  - 42
"""


@pytest.fixture
def feeds_file(tmp_path, monkeypatch):
    path = tmp_path / "feeds.yaml"
    path.write_text(FEEDS_YAML)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(path))
    for name in ("FETCH_SINCE_HOURS", "COVER_DATE_COLOR", "ADD_DATE_IN_COVER", "SECRETS_FILE"):
        monkeypatch.delenv(name, raising=False)
    return path


def test_feeds_yaml_is_loaded_and_invalid_entries_skipped(feeds_file):
    cfg = Config()

    assert [f.url for f in cfg.FEEDS] == ["https://a.example.com/rss", "https://b.example.com/rss"]
    alpha = cfg.FEEDS[0]
    assert alpha.display_name == "Alpha"
    assert alpha.position == 2
    assert alpha.category == "Tech"
    assert alpha.concurrency_limit == 3
    assert alpha.extractor_choice == ExtractorChoice.TEXT_ONLY

    custom = CustomExtractorConfig.from_yaml(cfg.FEEDS[1].custom_config)
    assert custom.selectors == ["article.main"]
    assert custom.output_mode == OutputMode.TEXT


def test_domain_overrides_use_lowercase_hosts(feeds_file):
    cfg = Config()
    assert list(cfg.DOMAIN_OVERRIDES) == ["example.com"]
    assert cfg.DOMAIN_OVERRIDES["example.com"].extractor_choice == ExtractorChoice.READABILITY_ALT


def test_read_it_later_entries(feeds_file):
    cfg = Config()
    assert [(i.url, i.title) for i in cfg.READ_IT_LATER] == [
        ("https://saved.example.com/1", None),
        ("https://saved.example.com/2", "Second"),
    ]


def test_settings_block_applies_when_env_is_silent(feeds_file):
    options = Config().run_options()
    assert options.fetch_since_hours == 12
    assert options.cover_date_color == "black"
    assert options.add_date_in_cover is True


def test_environment_wins_over_settings_block(feeds_file, monkeypatch):
    monkeypatch.setenv("FETCH_SINCE_HOURS", "6")
    monkeypatch.setenv("COVER_DATE_COLOR", "purple")
    cfg = Config()
    assert cfg.FETCH_SINCE_HOURS == 6
    assert cfg.COVER_DATE_COLOR == "white"


def test_missing_feeds_file_yields_empty_config(tmp_path, monkeypatch):
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    cfg = Config()
    assert cfg.FEEDS == []
    assert cfg.DOMAIN_OVERRIDES == {}
    assert cfg.READ_IT_LATER == []


def test_feed_spec_validation():
    with pytest.raises(ValueError):
        FeedSpec(url="ftp://example.com/feed")
    with pytest.raises(ValueError):
        FeedSpec(url="https://example.com/feed", concurrency_limit=-1)
    with pytest.raises(ValueError):
        FeedSpec(url="https://example.com/feed", extractor_choice=ExtractorChoice.CUSTOM)


@pytest.mark.parametrize("raw,expected", [
    (None, ExtractorChoice.DEFAULT),
    ("Readability-alt", ExtractorChoice.READABILITY_ALT),
    ("readability_alt", ExtractorChoice.READABILITY_ALT),
    ("TextOnly", ExtractorChoice.TEXT_ONLY),
    ("custom", ExtractorChoice.CUSTOM),
])
def test_extractor_choice_parsing(raw, expected):
    assert ExtractorChoice.parse(raw) == expected


def test_unknown_extractor_choice_is_rejected():
    with pytest.raises(ValueError):
        ExtractorChoice.parse("magic")
