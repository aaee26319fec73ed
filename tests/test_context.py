from __future__ import annotations

from pathlib import Path
import os
import tempfile
import textwrap
import unittest
from unittest.mock import patch

import yaml

from delivery.config import DeliveryDefinition, GlobalSettings, JFrogSettings, MetaSection
from delivery.context import Storage, python_compact, release_name
from delivery.environment import SystemInfo
from delivery.manifest import ManifestList

from fakes import LINUX_X86_64, definition_mapping, make_context


class ReleaseNameTests(unittest.TestCase):
    def test_release_candidate_name(self) -> None:
        meta = MetaSection(name="demo", version="1.0", rc=2, python="3.11")
        self.assertEqual(release_name(meta, LINUX_X86_64), "demo-1.0-rc2-py311-linux-x86_64")

    def test_final_release_drops_rc(self) -> None:
        meta = MetaSection(name="demo", version="1.0", rc=2, python="3.11.4", final=True)
        self.assertEqual(release_name(meta, LINUX_X86_64), "demo-1.0-py311-linux-x86_64")

    def test_hst_releases_lead_with_codename(self) -> None:
        meta = MetaSection(name="stack", version="2024.1", python="3.10", mission="hst", codename="caldp")
        macos = SystemInfo.detect(os_name="Darwin", machine="arm64")
        self.assertEqual(release_name(meta, macos), "caldp-stack-2024.1-rc1-py310-macos-arm64")

    def test_python_compact(self) -> None:
        self.assertEqual(python_compact("3.12.1"), "312")
        self.assertEqual(python_compact("3"), "3")


class SystemInfoTests(unittest.TestCase):
    def test_linux_subdirs(self) -> None:
        self.assertEqual(LINUX_X86_64.conda_subdir, "linux-64")
        self.assertEqual(SystemInfo.detect(os_name="Linux", machine="aarch64").conda_subdir, "linux-aarch64")

    def test_macos_normalizes_aarch64(self) -> None:
        info = SystemInfo.detect(os_name="Darwin", machine="aarch64")
        self.assertEqual(info.arch, "arm64")
        self.assertEqual(info.conda_installer_platform, "MacOSX")

    def test_unsupported_platform(self) -> None:
        with self.assertRaises(ValueError):
            SystemInfo.detect(os_name="Windows", machine="x86_64")
        with self.assertRaises(ValueError):
            SystemInfo.detect(os_name="linux", machine="sparc")


class DeliveryDefinitionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_meta_is_required(self) -> None:
        with self.assertRaises(ValueError):
            DeliveryDefinition.from_mapping({"conda": {}})
        with self.assertRaises(ValueError):
            DeliveryDefinition.from_mapping({"meta": {"name": "demo"}})

    def test_hst_requires_codename(self) -> None:
        with self.assertRaises(ValueError):
            DeliveryDefinition.from_mapping(definition_mapping(mission="hst"))

    def test_unknown_mission(self) -> None:
        with self.assertRaises(ValueError):
            DeliveryDefinition.from_mapping(definition_mapping(mission="voyager"))

    def test_rc_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            DeliveryDefinition.from_mapping(definition_mapping(rc=0))

    def test_duplicate_tests_are_rejected(self) -> None:
        data = definition_mapping(tests={"widget": {}})
        data["tests"] = [{"name": "widget"}]
        with self.assertRaises(ValueError):
            DeliveryDefinition.from_mapping(data)

    def test_loads_ini_definition(self) -> None:
        path = self.root / "demo.ini"
        path.write_text(
            textwrap.dedent(
                """
                [meta]
                name = demo
                version = 1.0
                rc = 3
                python = 3.11
                final = no

                [conda]
                installer_version = 24.3.0-0
                conda_packages =
                    numpy
                    widget
                pip_packages =
                    gadget

                [runtime]
                CPPFLAGS = -I{{storage.root}}/include

                [test:widget]
                version = 1.0
                build_recipe = https://github.com/org/widget-feedstock

                [test:gadget]
                repository = https://github.com/org/gadget
                script = pytest

                [deploy:jfrog]
                url = https://example.jfrog.io/artifactory
                repo = deliveries
                """
            )
        )
        definition = DeliveryDefinition.load(path)

        self.assertEqual(definition.meta.rc, 3)
        self.assertFalse(definition.meta.final)
        self.assertEqual(definition.conda.conda_packages, ["numpy", "widget"])
        self.assertEqual(definition.conda.pip_packages, ["gadget"])
        self.assertEqual([test.name for test in definition.tests], ["widget", "gadget"])
        self.assertEqual(definition.recipes(), {"widget": "https://github.com/org/widget-feedstock"})
        self.assertEqual(definition.sources(), {"gadget": "https://github.com/org/gadget"})
        self.assertTrue(definition.jfrog.enabled)
        self.assertEqual(definition.source, path)

    def test_missing_definition_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            DeliveryDefinition.load(self.root / "missing.toml")


class GlobalSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_defaults_without_config(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = GlobalSettings.load()
        self.assertFalse(settings.continue_on_error)
        self.assertFalse(settings.jfrog.enabled)

    def test_loads_from_environment_variable(self) -> None:
        path = self.root / "settings.toml"
        path.write_text(
            textwrap.dedent(
                """
                [global]
                continue_on_error = true
                tmpdir = "/scratch"
                conda_packages = ["boa", "conda-build"]

                [jfrog]
                url = "https://example.jfrog.io"
                repo = "stage"
                """
            )
        )
        with patch.dict(os.environ, {"DELIVERY_CONFIG": str(path)}):
            settings = GlobalSettings.load()
        self.assertTrue(settings.continue_on_error)
        self.assertEqual(settings.tmpdir, Path("/scratch"))
        self.assertEqual(settings.conda_packages, ["boa", "conda-build"])
        self.assertEqual(settings.jfrog, JFrogSettings(url="https://example.jfrog.io", repo="stage"))

    def test_missing_settings_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            GlobalSettings.load(self.root / "missing.toml")

    def test_override_ignores_none(self) -> None:
        settings = GlobalSettings(verbose=True).override(verbose=None, continue_on_error=True)
        self.assertTrue(settings.verbose)
        self.assertTrue(settings.continue_on_error)


class DeliveryContextTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_storage_layout(self) -> None:
        storage = Storage.from_root(self.root)
        storage.ensure()
        for directory in storage.directories():
            self.assertTrue(directory.is_dir(), directory)
        self.assertEqual(storage.conda_install_prefix, self.root.resolve() / "conda")
        self.assertFalse(storage.conda_install_prefix.exists())

    def test_create_resolves_runtime_and_manifest(self) -> None:
        context = make_context(
            self.root,
            conda_packages=["numpy", "widget"],
            tests={"widget": {"build_recipe": "{{storage.build_recipes_dir}}/widget"}},
        )
        self.assertEqual(context.env_name, "demo-1.0-rc1-py311-linux-x86_64")
        self.assertEqual(context.environment["DELIVERY_NAME"], "demo")
        self.assertEqual(context.environment["PATH"], "/usr/bin:/bin")
        widget = context.manifest.entries(ManifestList.CONDA_DIRECT)[1]
        self.assertEqual(widget.recipe, f"{context.storage.build_recipes_dir}/widget")

    def test_settings_tmpdir_and_staging_url(self) -> None:
        settings = GlobalSettings(tmpdir=self.root / "scratch", conda_staging_url="https://stage.example/conda")
        context = make_context(self.root / "work", settings=settings)
        self.assertEqual(context.storage.tmpdir, self.root / "scratch")
        self.assertEqual(context.storage.conda_staging_url, "https://stage.example/conda")

    def test_definition_jfrog_wins_over_settings(self) -> None:
        settings = GlobalSettings(jfrog=JFrogSettings(url="https://global", repo="global"))
        self.assertEqual(make_context(self.root, settings=settings).jfrog.url, "https://global")

    def test_installer_url(self) -> None:
        context = make_context(self.root)
        self.assertEqual(
            context.installer_url(),
            "https://github.com/conda-forge/miniforge/releases/latest/download/Miniforge3-Linux-x86_64.sh",
        )
        context.conda.installer_version = "24.3.0-0"
        self.assertTrue(context.installer_url().endswith("/Miniforge3-24.3.0-0-Linux-x86_64.sh"))

    def test_rewrite_spec(self) -> None:
        settings = GlobalSettings(conda_staging_url="https://stage.example/conda")
        context = make_context(self.root, settings=settings)
        path = self.root / "exported.yml"
        path.write_text(
            yaml.safe_dump(
                {
                    "name": "demo-1.0-rc1-py311-linux-x86_64",
                    "channels": [f"file://{context.storage.conda_artifact_dir}", "conda-forge"],
                    "dependencies": ["numpy=1.2", {"pip": ["requests==2.31"]}],
                    "prefix": "/opt/conda/envs/demo",
                }
            )
        )

        context.rewrite_spec(path)

        text = path.read_text()
        self.assertTrue(text.startswith("# name: demo\n"))
        self.assertIn("# release: demo-1.0-rc1-py311-linux-x86_64\n", text)
        self.assertIn("# created: 2024-01-02T03:04:05\n", text)
        data = yaml.safe_load(text)
        self.assertNotIn("prefix", data)
        self.assertEqual(data["name"], context.info.release_name)
        self.assertEqual(data["channels"], ["https://stage.example/conda", "conda-forge"])
        self.assertEqual(data["dependencies"], ["numpy=1.2", {"pip": ["requests==2.31"]}])

    def test_rewrite_spec_without_staging_url_drops_local_channel(self) -> None:
        context = make_context(self.root)
        path = self.root / "exported.yml"
        path.write_text(
            yaml.safe_dump({"name": "x", "channels": [str(context.storage.conda_artifact_dir), "conda-forge"]})
        )
        context.rewrite_spec(path)
        self.assertEqual(yaml.safe_load(path.read_text())["channels"], ["conda-forge"])

    def test_describe_sections(self) -> None:
        context = make_context(self.root, conda_packages=["numpy"], tests={"widget": {"version": "1.0"}})
        self.assertIn("Release Name: demo-1.0-rc1-py311-linux-x86_64", context.describe_meta())
        self.assertIn("conda_packages: numpy", context.describe_conda())
        self.assertIn("pip_packages: N/A", context.describe_conda())
        self.assertEqual(context.describe_tests(), ["widget 1.0"])
        self.assertEqual(context.describe_runtime(), ["DELIVERY_NAME=demo"])


if __name__ == "__main__":
    unittest.main()
