"""Tests for Trellis configuration loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from trellis.src.config import TrellisConfig, load_config
from trellis.src.errors import StoreUnavailableError


class TestTrellisConfig:
    """Tests for TrellisConfig defaults and serialization."""

    def test_defaults(self) -> None:
        cfg = TrellisConfig()
        assert cfg.port == 8420
        assert cfg.leaf_label == "Paragraph"
        assert cfg.retry.retryable_exceptions == (StoreUnavailableError,)

    def test_path_coerced(self) -> None:
        assert TrellisConfig(db_path=Path("x.db")).db_path == "x.db"  # type: ignore[arg-type]

    def test_invalid_port(self) -> None:
        with pytest.raises(ValueError):
            TrellisConfig(port=0)

    def test_invalid_lock_timeout(self) -> None:
        with pytest.raises(ValueError):
            TrellisConfig(lock_timeout_seconds=0)

    def test_dict_round_trip(self) -> None:
        cfg = TrellisConfig(db_path=":memory:", port=9000, citation_label="Quote")
        restored = TrellisConfig.from_dict(cfg.to_dict())
        assert restored.to_dict() == cfg.to_dict()

    def test_partial_dict_keeps_defaults(self) -> None:
        cfg = TrellisConfig.from_dict({"port": 9001, "retry": {"max_attempts": 7}})
        assert cfg.port == 9001
        assert cfg.host == "127.0.0.1"
        assert cfg.retry.max_attempts == 7
        assert cfg.retry.base_delay == 0.05

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="prot"):
            TrellisConfig.from_dict({"prot": 1})

    def test_unknown_retry_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="attempts"):
            TrellisConfig.from_dict({"retry": {"attempts": 2}})

    def test_linearizer_config(self) -> None:
        cfg = TrellisConfig(leaf_label="Claim", citation_label="Quote")
        lin = cfg.linearizer_config()
        assert (lin.leaf_label, lin.citation_label) == ("Claim", "Quote")


class TestLoadConfig:
    """Tests for load_config."""

    def test_none_gives_defaults(self) -> None:
        assert load_config(None).to_dict() == TrellisConfig().to_dict()

    def test_reads_file(self, tmp_path: Path) -> None:
        path = tmp_path / "trellis.json"
        path.write_text(json.dumps({"db_path": ":memory:", "leaf_label": "Claim"}))
        cfg = load_config(path)
        assert cfg.db_path == ":memory:"
        assert cfg.leaf_label == "Claim"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ValueError):
            load_config(path)

    def test_non_object(self, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            load_config(path)
