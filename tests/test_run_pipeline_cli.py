import json

from planet_counts.scripts.run_pipeline import build_parser, config_from_args, main


def test_flags_override_defaults():
    args = build_parser().parse_args([
        "catalog.csv", "--skip-rows", "3", "--k", "7", "--families", "poisson",
        "--missing-data-policy", "imputed", "--selection-policy", "lowest_aic",
        "--output", "out.json"])
    config = config_from_args(args)
    assert config.skip_rows == 3
    assert config.knn_neighbors == 7
    assert config.families == ("poisson",)
    assert config.missing_data_policy == "imputed"
    assert config.selection_policy == "lowest_aic"
    assert config.output_path == "out.json"
    assert config.deduplicate_hosts is False


def test_dry_run(catalog_csv, capsys):
    assert main([str(catalog_csv), "--skip-rows", "5", "--dry-run"]) == 0
    assert "Catalog Health Check" in capsys.readouterr().out


def test_full_run_writes_payload(catalog_csv, tmp_path):
    out = tmp_path / "reports" / "payload.json"
    perf = tmp_path / "perf.json"
    code = main([str(catalog_csv), "--skip-rows", "5", "--output", str(out),
                 "--perf-json", str(perf)])
    assert code == 0
    payload = json.loads(out.read_text())
    assert payload["decisions"]["family"]["family"] == "poisson"
    assert len(payload["models"]) == 4
    assert json.loads(perf.read_text())


def test_pipeline_errors_give_exit_code_one(tmp_path):
    assert main([str(tmp_path / "missing.csv"), "--skip-rows", "0"]) == 1
