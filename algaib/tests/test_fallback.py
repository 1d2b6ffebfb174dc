"""Tests for the local fallback strategy."""

from pathlib import Path

import pytest

from algaib.cancellation import CancellationToken
from algaib.errors import AgentNotFoundError, RunCancelled
from algaib.fallback import (
    DEFAULT_APP_NAME,
    FallbackRequest,
    FallbackRule,
    LocalFallback,
    extract_app_name,
    summarize_files,
)


def make_request(tmp_path: Path, description: str, **kwargs) -> FallbackRequest:
    return FallbackRequest(description=description, workspace_root=tmp_path, **kwargs)


class TestRuleSelection:
    @pytest.mark.parametrize(
        "description,rule",
        [
            ("Create a Next.js project in the web folder", "nextjs"),
            ("next 프로젝트 구성", "nextjs"),
            ("Analyze the repository layout", "analyze"),
            ("Read the README and summarize it", "analyze"),
            ("Refactor the billing module", "note"),
        ],
    )
    def test_first_matching_rule(self, description, rule):
        selected = LocalFallback().select(description)

        assert selected is not None
        assert selected.name == rule


class TestExtractAppName:
    @pytest.mark.parametrize(
        "description,name",
        [
            ("Create a Next.js app in the storefront folder", "storefront"),
            ("Scaffold a next project named shop-ui", "shop-ui"),
            ("my-app 라는 폴더에 next 프로젝트 구성", "my-app"),
            ("Create a next project", DEFAULT_APP_NAME),
        ],
    )
    def test_names(self, description, name):
        assert extract_app_name(description) == name


class TestActions:
    @pytest.mark.asyncio
    async def test_analyze_summarizes_workspace(self, tmp_path: Path):
        (tmp_path / "a.py").write_text("")
        (tmp_path / "b.py").write_text("")
        (tmp_path / "notes.md").write_text("")
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "dep.js").write_text("")

        name, log_line = await LocalFallback().run(make_request(tmp_path, "Analyze the code"))

        assert name == "analyze"
        assert "Scanned 3 files" in log_line
        assert ".py: 2" in log_line

    def test_summarize_skips_hidden_directories(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("")
        (tmp_path / "Makefile").write_text("")

        assert summarize_files(tmp_path) == {"(none)": 1}

    @pytest.mark.asyncio
    async def test_default_note(self, tmp_path: Path):
        name, log_line = await LocalFallback().run(make_request(tmp_path, "Refactor billing"))

        assert name == "note"
        assert "No local action matched" in log_line

    @pytest.mark.asyncio
    async def test_nextjs_without_npx_raises(self, tmp_path: Path):
        fallback = LocalFallback(env={"PATH": str(tmp_path)})

        with pytest.raises(AgentNotFoundError):
            await fallback.run(make_request(tmp_path, "Create a next project"))

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_action(self, tmp_path: Path):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RunCancelled):
            await LocalFallback().run(make_request(tmp_path, "Analyze the code", token=token))

    @pytest.mark.asyncio
    async def test_no_matching_rule(self, tmp_path: Path):
        async def action(request, env):
            return "unused"

        fallback = LocalFallback(rules=[FallbackRule("never", lambda desc: False, action)])

        with pytest.raises(LookupError):
            await fallback.run(make_request(tmp_path, "anything"))
