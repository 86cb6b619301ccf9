"""Tests for the command line interface."""

import json
import re

import pytest

from blockflow.cli import main, parse_assignments

from conftest import block, connect, workspace

PORCH = workspace(
    block(
        "ha_state_trigger",
        fields={"ENTITY_ID": "binary_sensor.porch_motion"},
        statements={
            "DO": connect(
                block(
                    "ha_call_service",
                    fields={"DOMAIN": "light", "SERVICE": "turn_on", "ENTITY_ID": "light.porch"},
                )
            )
        },
    )
)


@pytest.fixture
def porch_file(tmp_path):
    path = tmp_path / "porch.json"
    path.write_text(json.dumps(PORCH))
    return path


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


class TestParseAssignments:
    """Tests for ENTITY=STATE parsing."""

    def test_pairs(self):
        assert parse_assignments(["light.a=on", "sensor.b=1=2"]) == [
            ("light.a", "on"),
            ("sensor.b", "1=2"),
        ]

    def test_empty_state_allowed(self):
        assert parse_assignments(["light.a="]) == [("light.a", "")]

    @pytest.mark.parametrize("value", ["light.a", "=on"])
    def test_invalid(self, value):
        with pytest.raises(ValueError, match="expected ENTITY=STATE"):
            parse_assignments([value])


class TestCompileAndCheck:
    """Tests for the compile and check commands."""

    async def test_compile(self, porch_file, capsys):
        assert await main(["compile", str(porch_file)]) == 0
        output = capsys.readouterr().out
        assert "def on_binary_sensor_porch_motion_change(entity_id, new_state):" in output
        assert "call_service('light', 'turn_on', 'light.porch')" in output

    async def test_compile_unknown_block(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps(workspace(block("mystery"))))

        assert await main(["compile", str(path)]) == 1
        assert "Block definition not found for type: mystery" in capsys.readouterr().err

    async def test_compile_with_extra_blocks(self, tmp_path, capsys):
        blocks = tmp_path / "blocks"
        blocks.mkdir()
        (blocks / "beep.j2").write_text("print('beep')\n{{ NEXT }}")
        path = tmp_path / "beep.json"
        path.write_text(json.dumps(workspace(block("beep"))))

        assert await main(["--blocks", str(blocks), "compile", str(path)]) == 0
        assert "print('beep')" in capsys.readouterr().out

    async def test_invalid_json(self, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text("{not json")

        assert await main(["compile", str(path)]) == 1
        assert "is not valid JSON" in capsys.readouterr().err

    async def test_missing_file(self, tmp_path, capsys):
        assert await main(["compile", str(tmp_path / "missing.json")]) == 1
        assert "Error:" in capsys.readouterr().err

    async def test_check_ok(self, tmp_path, capsys):
        script = tmp_path / "ok.py"
        script.write_text("result = get_state('light.a')\n")

        assert await main(["check", str(script)]) == 0
        assert "OK" in capsys.readouterr().out

    async def test_check_rejects_policy_violation(self, tmp_path, capsys):
        script = tmp_path / "bad.py"
        script.write_text("import os\nx = os.__dict__\n")

        assert await main(["check", str(script)]) == 1
        assert "Script compilation error" in capsys.readouterr().err


class TestRun:
    """Tests for the run command."""

    async def test_run_with_state_and_notify(self, tmp_path, capsys):
        script = tmp_path / "porch.py"
        script.write_text(
            "print(get_state('light.porch'))\n"
            "on_state_change('binary_sensor.motion', "
            "lambda entity_id, new_state: set_state('light.porch', new_state))\n"
            "result = 42\n"
        )

        code = await main(
            [
                "run",
                str(script),
                "--state", "light.porch=off",
                "--notify", "binary_sensor.motion=on",
            ]
        )

        output = capsys.readouterr().out
        assert code == 0
        assert "off" in output
        assert "42" in output
        assert "light.porch = on" in output
        assert "binary_sensor.motion = on" in output

    async def test_run_lists_service_calls(self, tmp_path, capsys):
        script = tmp_path / "call.py"
        script.write_text("call_service('light', 'turn_on', 'light.a', {'brightness': 10})\n")

        assert await main(["run", str(script)]) == 0
        assert 'light.turn_on -> light.a {"brightness": 10}' in capsys.readouterr().out

    async def test_run_limit_exceeded(self, tmp_path, capsys):
        script = tmp_path / "spin.py"
        script.write_text("while True:\n    pass\n")

        assert await main(["run", str(script)]) == 1
        assert "Error:" in capsys.readouterr().err

    async def test_run_bad_assignment(self, tmp_path, capsys):
        script = tmp_path / "ok.py"
        script.write_text("result = 1\n")

        assert await main(["run", str(script), "--state", "light.a"]) == 1
        assert "expected ENTITY=STATE" in capsys.readouterr().err


class TestStoredAutomations:
    """Tests for create, list and delete."""

    async def test_create_list_delete(self, porch_file, db_path, capsys):
        assert await main(["--db", db_path, "list"]) == 0
        assert "No automations" in capsys.readouterr().out

        assert await main(["--db", db_path, "create", str(porch_file), "--name", "Porch lights"]) == 0
        created = re.search(r"Created (\S+?)\x1b", capsys.readouterr().out)
        assert created is not None
        automation_id = created.group(1)

        assert await main(["--db", db_path, "list"]) == 0
        listing = capsys.readouterr().out
        assert automation_id in listing
        assert "v1" in listing
        assert "Porch lights" in listing

        assert await main(["--db", db_path, "delete", automation_id]) == 0
        assert await main(["--db", db_path, "delete", automation_id]) == 1
        assert "Automation not found" in capsys.readouterr().err

    async def test_create_rejects_invalid_graph(self, tmp_path, db_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps(workspace(block("mystery"))))

        assert await main(["--db", db_path, "create", str(path), "--name", "Broken"]) == 1
        capsys.readouterr()

        assert await main(["--db", db_path, "list"]) == 0
        assert "No automations" in capsys.readouterr().out
