import pytest

from munin_exporter import cli
from munin_exporter.client import RetryPolicy


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    monkeypatch.setattr(cli, "_setup_logging", lambda verbose, quiet, console: None)


def test_build_config_defaults():
    cfg = cli.build_config(cli.make_parser().parse_args(["serve"]))
    assert cfg.munin.address == "localhost:4949"
    assert cfg.munin.retry == RetryPolicy(interval_s=1.0, max_attempts=None)
    assert (cfg.listen_address, cfg.listen_port, cfg.listen_path) == ("0.0.0.0", 8080, "/metrics")
    assert cfg.scrape_interval_s == 60.0
    assert cfg.scrape_wait_s is None


def test_build_config_flags():
    args = cli.make_parser().parse_args(
        [
            "--host", "node1", "--port", "5000", "--retry-interval", "2.5", "--max-retries", "4",
            "serve", "--listen-port", "9100", "--listen-path", "/munin", "--interval", "30", "--scrape-wait", "5",
        ]
    )
    cfg = cli.build_config(args)
    assert cfg.munin.address == "node1:5000"
    assert cfg.munin.retry == RetryPolicy(interval_s=2.5, max_attempts=4)
    assert cfg.listen_port == 9100
    assert cfg.listen_path == "/munin"
    assert cfg.scrape_interval_s == 30.0
    assert cfg.scrape_wait_s == 5.0


def test_subcommand_required():
    with pytest.raises(SystemExit):
        cli.make_parser().parse_args([])


def test_catalog_command(node, capsys):
    assert cli.main(["--host", "127.0.0.1", "--port", str(node.port), "catalog"]) == 0
    out = capsys.readouterr().out
    assert "cpu_usage" in out
    assert "net_rx" in out
    assert "counter" in out


def test_once_command(node, capsys):
    assert cli.main(["--host", "127.0.0.1", "--port", str(node.port), "once"]) == 0
    out = capsys.readouterr().out
    assert "42.5" in out
    assert "1000" in out
    assert node.commands == ["list", "config cpu", "config net", "fetch cpu", "fetch net"]


def test_connect_failure_exits_nonzero(node):
    node.banner = "nope\n"
    assert cli.main(["--host", "127.0.0.1", "--port", str(node.port), "catalog"]) == 1


def test_serve_exits_when_node_resets_connection(node, monkeypatch):
    monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: None)
    node.faults["fetch cpu"].append("reset")
    argv = [
        "--host", "127.0.0.1", "--port", str(node.port),
        "serve", "--listen-address", "127.0.0.1", "--listen-port", "0", "--interval", "0.05",
    ]
    assert cli.main(argv) == 1
    assert node.commands[-1] == "fetch cpu"
