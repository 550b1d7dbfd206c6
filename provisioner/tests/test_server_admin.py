import os

import pytest

from server_provisioner.errors import ProvisionError
from server_provisioner.server_admin import config_lines, latest_server_log, read_server_code, set_world_mode


class TestWorldMode:
    def test_switches_load_to_create(self, tmp_path):
        conf = tmp_path / "server.conf"
        conf.write_text('# MODE "create" generates the world\nMODE="load"\nPORT="7777"\n')
        assert set_world_mode(conf, "create")
        assert conf.read_text() == '# MODE "create" generates the world\nMODE="create"\nPORT="7777"\n'

    def test_already_in_mode(self, tmp_path):
        conf = tmp_path / "server.conf"
        conf.write_text('MODE="create"\n')
        assert not set_world_mode(conf, "create")

    def test_missing_file_or_mode_line(self, tmp_path):
        with pytest.raises(ProvisionError):
            set_world_mode(tmp_path / "server.conf", "create")
        (tmp_path / "server.conf").write_text('PORT="7777"\n')
        with pytest.raises(ProvisionError, match="No MODE line"):
            set_world_mode(tmp_path / "server.conf", "create")


class TestServerCode:
    def test_newest_log_wins(self, tmp_path):
        old = tmp_path / "server-1.log"
        new = tmp_path / "server-2.log"
        old.write_text("Server code: 111111\n")
        new.write_text("booting\nServer code: 222222\nServer code: 333333\n")
        (tmp_path / "create-3.log").write_text("Server code: 999999\n")
        os.utime(old, (1000, 1000))
        os.utime(new, (2000, 2000))
        assert latest_server_log(tmp_path) == new
        assert read_server_code(tmp_path) == "333333"

    def test_no_code_yet(self, tmp_path):
        assert read_server_code(tmp_path / "missing") is None
        (tmp_path / "server-1.log").write_text("loading world\n")
        assert read_server_code(tmp_path) is None


def test_config_lines_drop_comments(tmp_path):
    conf = tmp_path / "server.conf"
    conf.write_text('# World\nMAP_NAME="Sky"\n\n# Server\nPORT="7777"\n')
    assert config_lines(conf) == ['MAP_NAME="Sky"', "", 'PORT="7777"']
    assert config_lines(tmp_path / "nope.conf") == []
