"""Tests for command-line and environment configuration."""
import pytest

from profile_analyzer.config import AnalyzerConfig, load_config
from profile_analyzer.log_sink import LogSink
from profile_analyzer_cli import build_parser


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("_NT_SYMBOL_PATH", "PROFILE_ANALYZER_SYMBOL_PATH",
                 "PROFILE_ANALYZER_SYMBOL_CACHE", "PROFILE_ANALYZER_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = load_config(build_parser().parse_args(["trace.jsonl"]), dotenv=False)
    assert config == AnalyzerConfig(trace_path="trace.jsonl")


def test_cli_arguments():
    args = build_parser().parse_args([
        "trace.jsonl", "--top", "10", "-p", "4036", "-s", "srv*C:\\sym*https://s.example.com",
        "--timeout", "15", "--skip-size", "100", "--depth", "4", "--no-progress", "-v",
    ])
    config = load_config(args, dotenv=False)

    assert config.top_count == 10
    assert config.filter_pid == 4036
    assert config.symbol_path == "srv*C:\\sym*https://s.example.com"
    assert config.timeout_seconds == 15
    assert config.max_size_mb == 100
    assert config.tree_depth == 4
    assert config.show_progress is False
    assert config.verbose is True


def test_environment_fills_gaps(monkeypatch):
    monkeypatch.setenv("_NT_SYMBOL_PATH", "srv*C:\\nt")
    monkeypatch.setenv("PROFILE_ANALYZER_SYMBOL_CACHE", "/tmp/symcache")
    monkeypatch.setenv("PROFILE_ANALYZER_TIMEOUT", "45")

    config = load_config(build_parser().parse_args(["t.jsonl"]), dotenv=False)
    assert config.symbol_path == "srv*C:\\nt"
    assert config.symbol_cache == "/tmp/symcache"
    assert config.timeout_seconds == 45.0


def test_cli_overrides_environment(monkeypatch):
    monkeypatch.setenv("PROFILE_ANALYZER_SYMBOL_PATH", "from-env")
    monkeypatch.setenv("_NT_SYMBOL_PATH", "ignored")
    monkeypatch.setenv("PROFILE_ANALYZER_TIMEOUT", "not-a-number")

    config = load_config(build_parser().parse_args(["t.jsonl"]), dotenv=False)
    assert config.symbol_path == "from-env"
    assert config.timeout_seconds == 30

    config = load_config(build_parser().parse_args(["t.jsonl", "-s", "cli", "-t", "5"]), dotenv=False)
    assert config.symbol_path == "cli"
    assert config.timeout_seconds == 5


def test_dotenv_loaded_only_when_asked(monkeypatch):
    calls = []
    monkeypatch.setattr("profile_analyzer.config.load_dotenv", lambda: calls.append(True))

    load_config()
    load_config(dotenv=False)
    assert calls == [True]


def test_log_sink_filters_categories(capsys):
    """Provider chatter is hidden unless verbose; warnings always show."""
    sink = LogSink()
    sink.info("symbol", "shown")
    sink.info("provider", "hidden")
    sink.debug("symbol", "hidden too")
    sink.warning("provider", "always")

    out = capsys.readouterr().out
    assert "[SYMBOL] shown" in out
    assert "[PROVIDER] always" in out
    assert "hidden" not in out

    LogSink(verbose=True).debug("provider", "now visible")
    assert "[PROVIDER] now visible" in capsys.readouterr().out
