from __future__ import annotations

import pytest
from pydantic import BaseModel

from dcode_delivery.llm import ensure_openai_api_key, normalize_structured_output


class Verdict(BaseModel):
    ok: bool


def test_normalize_accepts_common_shapes() -> None:
    assert normalize_structured_output(raw_output={"ok": True}, schema=Verdict).ok
    assert normalize_structured_output(raw_output='{"ok": false}', schema=Verdict).ok is False
    envelope = {"parsed": Verdict(ok=True), "parsing_error": None, "raw": None}
    assert normalize_structured_output(raw_output=envelope, schema=Verdict).ok


def test_normalize_rejects_bad_output() -> None:
    with pytest.raises(RuntimeError, match="not valid JSON"):
        normalize_structured_output(raw_output="nope", schema=Verdict)
    with pytest.raises(RuntimeError, match="validation failed"):
        normalize_structured_output(raw_output={"ok": "maybe"}, schema=Verdict)
    with pytest.raises(RuntimeError, match="parsing failed"):
        normalize_structured_output(raw_output={"parsed": None, "parsing_error": "bad", "raw": None}, schema=Verdict)


def test_missing_api_key_fails_fast(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ensure_openai_api_key(project_dir=tmp_path)
