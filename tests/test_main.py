"""Unit tests for cearch.main (command line)."""

import logging
from pathlib import Path
from unittest import mock

import numpy as np
import pytest

from cearch.errors import CearchError, EmbedError
from cearch.main import build_parser, main, resolve_repo_root, setup_logging


class _StubEmbedder:
    model_name = "stub"
    dimension = 16

    def _vector(self, text):
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in text.split():
            vector[sum(token.encode()) % self.dimension] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm else vector

    def embed(self, text):
        return self._vector(text)

    def embed_many(self, texts, batch_size=None):
        return [self._vector(t) for t in texts]


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    (root / "a.py").write_text("def add(x, y):\n    return x + y\n")
    (root / "b.py").write_text("def mul(x, y):\n    return x * y\n")
    (root / "bad.py").write_text("def oops(:\n")
    return root


@pytest.fixture
def stub_embedder():
    with mock.patch("cearch.main.Embedder.load", return_value=_StubEmbedder()) as m:
        yield m


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParser:
    def test_query_defaults(self):
        args = build_parser().parse_args(["query", "sort a list"])
        assert args.query == "sort a list"
        assert args.path is None
        assert args.show is False
        assert args.num_results > 0

    def test_clean_keep_models(self):
        args = build_parser().parse_args(["clean", "some/dir", "--keep-models"])
        assert args.path == "some/dir"
        assert args.keep_models is True

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestResolveRepoRoot:
    def test_uses_git_root(self, tmp_path):
        (tmp_path / ".git").mkdir()
        sub = tmp_path / "src" / "pkg"
        sub.mkdir(parents=True)
        assert resolve_repo_root(str(sub)) == tmp_path.resolve()

    def test_missing_path_is_error(self, tmp_path):
        with pytest.raises(CearchError, match="No such directory"):
            resolve_repo_root(str(tmp_path / "missing"))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    def test_index_then_query(self, repo, stub_embedder, capsys):
        assert main(["index", str(repo)]) == 0
        out, err = capsys.readouterr()
        assert "Indexed 2 units from 2 files" in out
        assert "bad.py" in err

        assert main(["query", "return x + y", "--path", str(repo), "-n", "1", "--show"]) == 0
        out, _ = capsys.readouterr()
        assert " 1. a.py:1-2  function add" in out
        assert "return x + y" in out

    def test_query_without_index_fails(self, repo, stub_embedder, capsys):
        assert main(["query", "anything", "--path", str(repo)]) == 1
        _, err = capsys.readouterr()
        assert err.startswith("Error: ")
        assert "cearch index" in err

    def test_clean_is_idempotent(self, repo, stub_embedder, capsys, tmp_path):
        main(["index", str(repo)])
        capsys.readouterr()
        with mock.patch(
            "cearch.engine.config.get_model_cache_dir", return_value=tmp_path / "models"
        ):
            assert main(["clean", str(repo)]) == 0
            assert "Index removed." in capsys.readouterr().out
            assert main(["clean", str(repo)]) == 0
            assert "Nothing to clean." in capsys.readouterr().out
        assert not (repo / ".cearch").exists()

    def test_query_after_clean_skips_model_load(self, repo, stub_embedder, capsys, tmp_path):
        main(["index", str(repo)])
        with mock.patch(
            "cearch.engine.config.get_model_cache_dir", return_value=tmp_path / "models"
        ):
            main(["clean", str(repo)])
        capsys.readouterr()
        stub_embedder.reset_mock()

        assert main(["query", "anything", "--path", str(repo)]) == 1
        stub_embedder.assert_not_called()
        assert "No index found" in capsys.readouterr().err

    def test_zero_results_requested(self, repo, stub_embedder, capsys):
        main(["index", str(repo)])
        capsys.readouterr()
        assert main(["query", "return x + y", "--path", str(repo), "-n", "0"]) == 0
        assert capsys.readouterr().out.strip() == "No results."

    def test_model_load_failure_exits_with_error(self, repo, capsys):
        with mock.patch(
            "cearch.main.Embedder.load", side_effect=EmbedError("Failed to load embedding model x")
        ):
            assert main(["index", str(repo)]) == 1
        assert "Failed to load embedding model" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# setup_logging
# ---------------------------------------------------------------------------


class TestSetupLogging:
    def test_creates_log_directory_and_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        root = logging.getLogger()
        for h in root.handlers[:]:
            root.removeHandler(h)
            h.close()

        log_file = setup_logging()

        assert "log/cearch-" in log_file
        assert log_file.endswith(".log")
        assert Path(log_file).parent.is_dir()

        for h in root.handlers[:]:
            root.removeHandler(h)
            h.close()

    def test_main_with_log_flag(self, repo, stub_embedder):
        with mock.patch("cearch.main.setup_logging") as mock_setup:
            mock_setup.return_value = "log/cearch-test.log"
            main(["--log", "index", str(repo)])
            mock_setup.assert_called_once()

    def test_main_without_log_flag(self, repo, stub_embedder):
        with mock.patch("cearch.main.setup_logging") as mock_setup:
            main(["index", str(repo)])
            mock_setup.assert_not_called()
