import pytest
import sys
from pathlib import Path
from datetime import date

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shift_cycle.data_manager import DataManager
from shift_cycle.main import run_cli


@pytest.fixture
def data_file(tmp_path):
    path = tmp_path / "data.json"
    dm = DataManager(str(path))
    dm.set_scheme_start_date(date(2024, 1, 1))
    dm.add_assignment("u1", "A", date(2024, 1, 1))
    dm.save_data()
    return path


def test_team_grid_output(data_file, capsys):
    code = run_cli(["--data-file", str(data_file), "--start", "2024-01-01", "--end", "2024-01-18"])
    assert code == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 18
    assert lines[0] == ("2024-01-01 [day 0] morning: A, B | afternoon: C, D | "
                        "night: E, F | rest: G, H, I")


def test_user_output(data_file, capsys):
    code = run_cli(["--data-file", str(data_file), "--start", "2024-01-04", "--end", "2024-01-05",
                    "--user", "u1"])
    assert code == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines == [
        "2024-01-04 user u1 team A: Morning 05:00-13:00",
        "2024-01-05 user u1 team A: rest",
    ]


def test_missing_scheme_start_fails(tmp_path, capsys):
    code = run_cli(["--data-file", str(tmp_path / "empty.json"),
                    "--start", "2024-01-01", "--end", "2024-01-02"])
    assert code == 1
    assert "Scheme start date is not set" in capsys.readouterr().err


def test_scheme_start_option_is_stored(tmp_path, capsys):
    path = tmp_path / "new.json"
    code = run_cli(["--data-file", str(path), "--scheme-start", "2024-01-03",
                    "--start", "2024-01-03", "--end", "2024-01-03"])
    assert code == 0
    assert "[day 0]" in capsys.readouterr().out
    assert DataManager(str(path)).get_scheme_start_date() == date(2024, 1, 3)


def test_reversed_range_fails(data_file):
    assert run_cli(["--data-file", str(data_file), "--start", "2024-01-05", "--end", "2024-01-01"]) == 1


def test_export_option(data_file, tmp_path, capsys):
    output = tmp_path / "grid.csv"
    code = run_cli(["--data-file", str(data_file), "--start", "2024-01-01", "--end", "2024-01-03",
                    "--export", "csv", "--output", str(output)])
    assert code == 0
    assert output.exists()
    assert f"Exported to {output}" in capsys.readouterr().out
