from click.testing import CliRunner

from agentstack import __version__
from agentstack.cli import main


def test_version() -> None:
    result = CliRunner().invoke(main, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_agent_types_lists_builtins() -> None:
    result = CliRunner().invoke(main, ["agents", "types"])

    assert result.exit_code == 0
    assert "coder" in result.output
    assert "adversarial" in result.output
