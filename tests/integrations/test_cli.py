# tests/integrations/test_cli.py
import json

import pytest

import cli
from field_intake import config
from field_intake.config import Settings


@pytest.fixture(autouse=True)
def no_model_calls(monkeypatch):
    monkeypatch.setattr(config, "USE_LLM_EXTRACTOR", False)
    monkeypatch.setattr(config, "USE_VISION_EXTRACTOR", False)


@pytest.fixture()
def catalog_file(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(
        "entities:\n"
        "  - code: '4567890'\n"
        "    id: EQ-1\n"
        "    description: Walk-in cooler\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def centers_file(tmp_path):
    path = tmp_path / "centers.json"
    path.write_text(
        json.dumps([{"id": "SC-N", "name": "North Depot", "latitude": 19.50, "longitude": -99.13}]),
        encoding="utf-8",
    )
    return path


def test_parser_requires_form_type():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["chat"])
    args = cli.build_parser().parse_args(["chat", "--form-type", "VEHICLE", "--key", "k1"])
    assert (args.form_type, args.key, args.func) == ("VEHICLE", "k1", cli.cmd_chat)


def test_chat_refrigerator_to_completion(tmp_path, catalog_file, monkeypatch, capsys):
    store = tmp_path / "store"
    replies = iter(["/help", "4567890", "yes", "no cooling for two days"])
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(replies))

    rc = cli.main(["chat", "--form-type", "REFRIGERATOR", "--store", str(store), "--catalog", str(catalog_file)])
    out = capsys.readouterr().out

    assert rc == 0
    assert "Commands:" in out
    assert "EQ-1" in out
    assert "Your report has been created" in out

    [row] = cli.LocalRecordFinalizer(store).list_records()
    assert row["form_type"] == "REFRIGERATOR"
    assert row["linked_entity_id"] == "EQ-1"


def test_chat_location_command(tmp_path, centers_file, monkeypatch, capsys):
    replies = iter(["employee 4471, SAP 7788123, problem: flat tire on the highway", "/location 19.48, -99.13"])
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(replies))

    rc = cli.main(["chat", "--form-type", "VEHICLE", "--store", str(tmp_path), "--centers", str(centers_file)])
    assert rc == 0
    [row] = cli.LocalRecordFinalizer(tmp_path).list_records()
    assert row["fields"]["location"]["coordinates"] == {"latitude": 19.48, "longitude": -99.13}
    assert row["derived_data"]["service_center"] == "North Depot"

    capsys.readouterr()
    assert cli.main(["records", "list", "--store", str(tmp_path)]) == 0
    assert row["record_id"] in capsys.readouterr().out


def test_ask_json(tmp_path, capsys):
    orch = cli.build_orchestrator(store_dir=tmp_path, settings=Settings())
    orch.start_flow("k", "VEHICLE")

    rc = cli.main(["ask", "--key", "k", "--text", "employee 4471", "--json", "--store", str(tmp_path)])
    payload = json.loads(capsys.readouterr().out)
    assert rc == 0
    assert payload["kind"] == "prompt"
    assert payload["prompt"]["field"] == "equipment_code"
    assert payload["state"] == "COLLECTING"


def test_ask_without_session(tmp_path, capsys):
    rc = cli.main(["ask", "--key", "nobody", "--text", "hello", "--store", str(tmp_path)])
    assert rc == 0
    assert "no open report" in capsys.readouterr().out


def test_records_list_empty(tmp_path, capsys):
    assert cli.main(["records", "list", "--store", str(tmp_path)]) == 0
    assert "No records." in capsys.readouterr().out


def test_sweep_nothing_to_expire(tmp_path, capsys):
    assert cli.main(["sweep", "--store", str(tmp_path)]) == 0
    assert "Nothing to expire." in capsys.readouterr().out
