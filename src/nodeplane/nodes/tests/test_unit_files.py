"""
单元文件渲染测试：systemd 输出逐字节比对，launchd 输出可被 plistlib 解析。
"""

import plistlib
from pathlib import Path

import pytest

from src.nodeplane.errors import ValidationError
from src.nodeplane.nodes.services.unit_files import render_launchd_plist, render_systemd_unit, write_unit

EXPECTED_UNIT = """[Unit]
Description=Hyperledger Besu Node - n1
After=network.target

[Service]
Type=simple
WorkingDirectory=/srv/besu/n1
ExecStart=/bin/bash -c "exec /opt/besu/bin/besu --data-path=/srv/besu/n1/data '--host-allowlist=*' > /srv/besu/n1/besu-n1.log 2>&1"
Restart=on-failure
RestartSec=10
LimitNOFILE=65536
Environment="A_FIRST=1"
Environment="JAVA_OPTS=-Xmx4g"

[Install]
WantedBy=multi-user.target
"""


def test_render_systemd_unit_exact():
    unit = render_systemd_unit(
        "Hyperledger Besu Node - n1",
        Path("/srv/besu/n1"),
        ["/opt/besu/bin/besu", "--data-path=/srv/besu/n1/data", "--host-allowlist=*"],
        {"JAVA_OPTS": "-Xmx4g", "A_FIRST": "1"},
        Path("/srv/besu/n1/besu-n1.log"),
    )
    assert unit == EXPECTED_UNIT


def test_systemd_escapes_percent():
    unit = render_systemd_unit("d", Path("/w"), ["bin"], {"RATE": "50%"}, Path("/w/l.log"))
    assert 'Environment="RATE=50%%"' in unit


def test_systemd_dollar_only_escaped_in_exec_start():
    unit = render_systemd_unit(
        "cost $5", Path("/w/$dir"), ["bin", "--pass=a$b"], {"PASS": "a$b"}, Path("/w/l.log")
    )
    assert 'Environment="PASS=a$b"' in unit
    assert "Description=cost $5\n" in unit
    assert "WorkingDirectory=/w/$dir\n" in unit
    assert "exec bin '--pass=a$$b' >" in unit


@pytest.mark.parametrize("key", ['BAD"KEY', "BAD\nKEY", "BAD\\KEY"])
def test_systemd_rejects_unsafe_keys(key):
    with pytest.raises(ValidationError):
        render_systemd_unit("d", Path("/w"), ["bin"], {key: "1"}, Path("/w/l.log"))


@pytest.mark.parametrize("value", ['say "hi"', "a\\b", "line1\nline2"])
def test_systemd_rejects_unsafe_values(value):
    with pytest.raises(ValidationError):
        render_systemd_unit("d", Path("/w"), ["bin"], {"BAD": value}, Path("/w/l.log"))


def test_render_launchd_plist():
    text = render_launchd_plist(
        "dev.nodeplane.besu.n1",
        Path("/srv/besu/n1"),
        ["/opt/besu/bin/besu", "--x=<y>"],
        {"JAVA_OPTS": "-Xmx4g & more"},
        Path("/srv/besu/n1/besu-n1.log"),
    )
    data = plistlib.loads(text.encode("utf-8"))
    assert data["Label"] == "dev.nodeplane.besu.n1"
    assert data["ProgramArguments"] == ["/opt/besu/bin/besu", "--x=<y>"]
    assert data["EnvironmentVariables"] == {"JAVA_OPTS": "-Xmx4g & more"}
    assert data["StandardOutPath"] == data["StandardErrorPath"] == "/srv/besu/n1/besu-n1.log"
    assert data["RunAtLoad"] is True


def test_write_unit(tmp_path):
    path = tmp_path / "units" / "besu-n1.service"
    write_unit(path, "content")
    assert path.read_text() == "content"
    assert not any(p.name.endswith(".tmp") for p in path.parent.iterdir())
