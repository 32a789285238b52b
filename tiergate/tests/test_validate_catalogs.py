import copy
import json

from tiergate.features.catalog.service import DEFAULT_CATALOG
from tiergate.scripts.validate_catalogs import main


def test_builtin_catalogs_validate(capsys):
    assert main([]) == 0
    out = capsys.readouterr().out
    assert "tier catalog: 5 tiers" in out
    assert "usage_limit" in out


def test_bad_tier_catalog_fails(tmp_path, capsys):
    raw = copy.deepcopy(DEFAULT_CATALOG)
    raw["tiers"]["enterprise"]["limits"]["monthly_scan"] = 1
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps(raw), encoding="utf-8")
    assert main(["--tiers", str(path)]) == 1
    assert "monthly_scan" in capsys.readouterr().out


def test_bad_prompt_catalog_fails(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"triggers": [{"trigger_type": "x"}]}), encoding="utf-8")
    assert main(["--prompts", str(path)]) == 1
