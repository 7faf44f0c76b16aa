import json

import pytest
import yaml

from pve_zfs_installer.config import (
    DEFAULT_PACKAGES,
    GIB,
    IdempotencyPolicy,
    InstallerConfig,
    load_config,
    parse_size,
)
from pve_zfs_installer.errors import ConfigError


class TestParseSize:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (4096, 4096),
            ("4096", 4096),
            ("100G", 100 * GIB),
            ("100GiB", 100 * GIB),
            ("1.5T", int(1.5 * 1024 * GIB)),
            ("512m", 512 * 1024**2),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_size(raw) == expected

    @pytest.mark.parametrize("raw", ["lots", "-1", True, -5, "10X"])
    def test_invalid(self, raw):
        with pytest.raises(ConfigError):
            parse_size(raw)


class TestInstallerConfig:
    def test_defaults(self):
        cfg = InstallerConfig()

        assert cfg.pool_name == "rpool"
        assert cfg.min_mirror_size == 100 * GIB
        assert cfg.idempotency == IdempotencyPolicy.PROMPT
        assert cfg.root_dataset_path == "rpool/ROOT/pve-1"
        assert cfg.pool_properties == {"compatibility": "grub2", "ashift": "12"}
        assert cfg.dataset_properties == {"compression": "lz4", "atime": "off"}
        assert cfg.packages == DEFAULT_PACKAGES

    def test_from_mapping_coerces(self, caplog):
        cfg = InstallerConfig.from_mapping(
            {
                "pool-name": "tank",
                "min_mirror_size": "200G",
                "idempotency": "FORCE",
                "exclude_devices": "sdc sdd",
                "auto_mirror": "no",
                "tool_timeout": "30",
                "apt_keys": [{"url": "https://example.invalid/key.gpg", "dest": "/etc/apt/trusted.gpg.d/x.gpg"}],
                "firmware": "UEFI",
                "network_interface": "eth0",
            }
        )

        assert cfg.pool_name == "tank"
        assert cfg.min_mirror_size == 200 * GIB
        assert cfg.idempotency == IdempotencyPolicy.FORCE
        assert cfg.exclude_devices == ("sdc", "sdd")
        assert cfg.auto_mirror is False
        assert cfg.tool_timeout == 30.0
        assert cfg.apt_keys == (("https://example.invalid/key.gpg", "/etc/apt/trusted.gpg.d/x.gpg"),)
        assert cfg.firmware == "uefi"
        assert cfg.extra == {"network_interface": "eth0"}
        assert "network_interface" in caplog.text

    @pytest.mark.parametrize(
        "raw",
        [
            {"idempotency": "sometimes"},
            {"firmware": "bios"},
            {"pool_name": "rpool/child"},
            {"root_dataset": "/ROOT"},
            {"target_root": "relative"},
            {"tool_timeout": 0},
            {"tool_timeout": "soon"},
            {"auto_mirror": "maybe"},
            {"apt_keys": ["just-a-url"]},
            {"atime": "sometimes"},
            {"relatime": 1},
            {"compression": ""},
            {"hostname": "pve_1"},
            {"domain": "-bad"},
            {"timezone": "../etc/passwd"},
            {"locale": "en US"},
        ],
    )
    def test_invalid_values(self, raw):
        with pytest.raises(ConfigError):
            InstallerConfig.from_mapping(raw)

    def test_non_mapping(self):
        with pytest.raises(ConfigError):
            InstallerConfig.from_mapping(["pool_name"])

    def test_system_settings(self):
        cfg = InstallerConfig.from_mapping(
            {"hostname": "pve1", "domain": "example.com", "timezone": "Europe/Berlin", "root-password": 1234}
        )

        assert cfg.hostname == "pve1"
        assert cfg.timezone == "Europe/Berlin"
        assert cfg.locale == "en_US.UTF-8"
        assert cfg.root_password == "1234"
        assert "1234" not in repr(cfg)
        assert cfg.extra == {}

    def test_relatime_sent_only_with_atime_on(self):
        cfg = InstallerConfig(atime="on", relatime="off")

        assert cfg.dataset_properties == {"compression": "lz4", "atime": "on", "relatime": "off"}

    def test_replace_revalidates(self):
        cfg = InstallerConfig()

        assert cfg.replace(dry_run=True).dry_run
        with pytest.raises(ConfigError):
            cfg.replace(firmware="bios")


class TestLoadConfig:
    def test_none_means_defaults(self):
        assert load_config(None) == InstallerConfig()

    def test_yaml(self, tmp_path):
        p = tmp_path / "installer.yaml"
        p.write_text(yaml.safe_dump({"pool_name": "tank", "idempotency": "fail"}), encoding="utf-8")

        cfg = load_config(str(p))

        assert cfg.pool_name == "tank"
        assert cfg.idempotency == IdempotencyPolicy.FAIL

    def test_yaml_on_off_properties(self, tmp_path):
        p = tmp_path / "installer.yaml"
        p.write_text("atime: off\nrelatime: on\ncompression: lz4\n", encoding="utf-8")

        cfg = load_config(str(p))

        assert cfg.atime == "off"
        assert cfg.relatime == "on"
        assert cfg.dataset_properties == {"compression": "lz4", "atime": "off"}

    def test_yaml_compression_off(self, tmp_path):
        p = tmp_path / "installer.yaml"
        p.write_text("compression: off\natime: on\n", encoding="utf-8")

        cfg = load_config(str(p))

        assert cfg.dataset_properties == {"compression": "off", "atime": "on", "relatime": "on"}

    def test_json(self, tmp_path):
        p = tmp_path / "installer.json"
        p.write_text(json.dumps({"min_mirror_size": 1024}), encoding="utf-8")

        assert load_config(str(p)).min_mirror_size == 1024

    def test_empty_yaml(self, tmp_path):
        p = tmp_path / "installer.yml"
        p.write_text("", encoding="utf-8")

        assert load_config(str(p)) == InstallerConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_bad_yaml(self, tmp_path):
        p = tmp_path / "installer.yaml"
        p.write_text("pool_name: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_config(str(p))

    def test_bad_json(self, tmp_path):
        p = tmp_path / "installer.json"
        p.write_text("{", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_config(str(p))
