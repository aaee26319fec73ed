from __future__ import annotations

from pathlib import Path
import tempfile
import unittest

from delivery.conda import CondaDriver
from delivery.config import JFrogSettings
from delivery.environment import EnvironmentStore
from delivery.manifest import ManifestEntry, PackageKind
from delivery.pipeline import (
    BuildPipeline,
    JFrogPublisher,
    StagingPublisher,
    UploadResult,
    WHEEL_CHANNEL,
    WheelBuilder,
    normalize_project_name,
    write_simple_index,
)

from fakes import ScriptedRunner, make_context, quiet_console


class RecordingPublisher:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.calls: list[tuple[list[Path], str]] = []
        self.failing = failing or set()

    def publish(self, paths, channel):
        self.calls.append((list(paths), channel))
        return [
            UploadResult(path=path, destination=channel, ok=path.name not in self.failing, message="denied")
            for path in paths
        ]


class BuildPipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.console = quiet_console()
        self.context = make_context(self.root / "work")
        self.context.storage.ensure()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _driver(self, runner: ScriptedRunner) -> CondaDriver:
        return CondaDriver(
            runner,
            self.console,
            self.context.environment,
            prefix=self.context.storage.conda_install_prefix,
            tmpdir=self.context.storage.tmpdir,
        )

    def _recipe(self, name: str, *, nested: bool = True) -> Path:
        base = self.root / "recipes" / name
        recipe_dir = base / "recipe" if nested else base
        recipe_dir.mkdir(parents=True)
        (recipe_dir / "meta.yaml").write_text(f"package:\n  name: {name}\n")
        return base

    def test_empty_entry_list_is_a_no_op(self) -> None:
        runner = ScriptedRunner()
        publisher = RecordingPublisher()
        pipeline = BuildPipeline(self._driver(runner), self.console, publisher=publisher)

        result = pipeline.run([], PackageKind.CONDA, self.context)

        self.assertEqual(runner.commands, [])
        self.assertFalse(result.indexed)
        self.assertEqual(publisher.calls, [])
        self.assertTrue(result.ok)

    def test_conda_recipe_is_built_indexed_and_published(self) -> None:
        recipe = self._recipe("widget")
        artifact = "/out/linux-64/widget-1.0-0.conda"
        runner = ScriptedRunner([("mamba build --output ", 0, f"{artifact}\n")])
        publisher = RecordingPublisher()
        pipeline = BuildPipeline(self._driver(runner), self.console, publisher=publisher)
        entry = ManifestEntry("widget", PackageKind.CONDA, recipe=str(recipe))

        result = pipeline.run([entry], PackageKind.CONDA, self.context)

        artifact_dir = self.context.storage.conda_artifact_dir
        self.assertEqual(
            runner.commands,
            [
                f"mamba build --python 3.11 --output-folder {artifact_dir} {recipe / 'recipe'}",
                f"mamba build --output --python 3.11 --output-folder {artifact_dir} {recipe / 'recipe'}",
                f"conda index {artifact_dir}",
            ],
        )
        self.assertTrue(result.ok)
        self.assertTrue(result.indexed)
        self.assertEqual(result.artifacts, [Path(artifact)])
        self.assertEqual(publisher.calls, [([Path(artifact)], "linux-64")])

    def test_remote_recipes_are_cloned(self) -> None:
        runner = ScriptedRunner([("git clone", 128, "")])
        pipeline = BuildPipeline(self._driver(runner), self.console)
        entry = ManifestEntry("widget", PackageKind.CONDA, recipe="https://github.com/org/widget-feedstock.git@v2")

        result = pipeline.run([entry], PackageKind.CONDA, self.context)

        destination = self.context.storage.build_recipes_dir / "widget"
        self.assertEqual(
            runner.commands[0],
            f"git clone --recursive --branch v2 https://github.com/org/widget-feedstock.git {destination}",
        )
        self.assertFalse(result.ok)
        self.assertIn("Unable to clone", result.records[0].error)

    def test_entries_without_recipe_are_left_out(self) -> None:
        good = ManifestEntry("good", PackageKind.CONDA, recipe=str(self._recipe("good", nested=False)))
        bad = ManifestEntry("bad", PackageKind.CONDA)
        runner = ScriptedRunner()
        pipeline = BuildPipeline(self._driver(runner), self.console)

        result = pipeline.run([bad, good], PackageKind.CONDA, self.context)

        self.assertTrue(result.ok)
        self.assertTrue(result.records[0].ignored)
        self.assertEqual(result.built, [good])
        self.assertEqual(len([c for c in runner.commands if c.startswith("mamba build --python")]), 1)
        self.assertEqual(self.console.warnings, 1)

    def test_stop_on_failure_skips_remaining_entries(self) -> None:
        first = ManifestEntry("first", PackageKind.CONDA, recipe=str(self._recipe("first")))
        second = ManifestEntry("second", PackageKind.CONDA, recipe=str(self._recipe("second")))
        runner = ScriptedRunner([("mamba build --python", 1, "")])
        pipeline = BuildPipeline(self._driver(runner), self.console)

        result = pipeline.run([first, second], PackageKind.CONDA, self.context, stop_on_failure=True)

        self.assertTrue(result.records[1].skipped)
        self.assertEqual(len([c for c in runner.commands if c.startswith("mamba build")]), 1)
        self.assertIn("second: skipped", result.failures)
        self.assertTrue(result.indexed)

    def test_index_failure_fails_the_phase(self) -> None:
        entry = ManifestEntry("widget", PackageKind.CONDA, recipe=str(self._recipe("widget")))
        runner = ScriptedRunner([("conda index", 1, "")])
        result = BuildPipeline(self._driver(runner), self.console).run([entry], PackageKind.CONDA, self.context)
        self.assertFalse(result.indexed)
        self.assertFalse(result.ok)

    def test_upload_failures_fail_the_phase(self) -> None:
        entry = ManifestEntry("widget", PackageKind.CONDA, recipe=str(self._recipe("widget")))
        runner = ScriptedRunner([("mamba build --output ", 0, "/out/widget.conda\n")])
        publisher = RecordingPublisher(failing={"widget.conda"})
        pipeline = BuildPipeline(self._driver(runner), self.console, publisher=publisher)

        result = pipeline.run([entry], PackageKind.CONDA, self.context)

        self.assertEqual(result.failures, ["upload widget.conda: denied"])

    def _wheel_runner(self, filename: str, payload: bytes = b"wheel") -> ScriptedRunner:
        def build_wheel(command) -> None:
            output_dir = Path(command[command.index("--wheel-dir") + 1])
            (output_dir / filename).write_bytes(payload)

        return ScriptedRunner(effects={"python -m pip wheel": build_wheel})

    def test_wheels_are_built_and_indexed(self) -> None:
        source = self.root / "src" / "gadget"
        source.mkdir(parents=True)
        wheel_dir = self.context.storage.wheel_artifact_dir
        runner = self._wheel_runner("gadget-0.1-py3-none-any.whl")
        publisher = RecordingPublisher()
        pipeline = BuildPipeline(self._driver(runner), self.console, publisher=publisher)
        entry = ManifestEntry("gadget", PackageKind.PIP, recipe=str(source))

        result = pipeline.run([entry], PackageKind.PIP, self.context)

        output_dir = self.context.storage.build_dir / "wheels" / "gadget"
        self.assertEqual(runner.commands, [f"python -m pip wheel --no-deps --wheel-dir {output_dir} {source}"])
        self.assertEqual(result.artifacts, [wheel_dir / "gadget-0.1-py3-none-any.whl"])
        self.assertTrue((wheel_dir / "simple" / "gadget" / "index.html").exists())
        self.assertEqual(publisher.calls[0][1], WHEEL_CHANNEL)

    def test_rebuilt_wheel_with_existing_filename_is_an_artifact(self) -> None:
        source = self.root / "src" / "gadget"
        source.mkdir(parents=True)
        wheel_dir = self.context.storage.wheel_artifact_dir
        stale = wheel_dir / "gadget-1.0-py3-none-any.whl"
        stale.write_bytes(b"old")
        leftover = self.context.storage.build_dir / "wheels" / "gadget" / "gadget-0.9-py3-none-any.whl"
        leftover.parent.mkdir(parents=True)
        leftover.write_bytes(b"older")
        runner = self._wheel_runner(stale.name, b"new")
        entry = ManifestEntry("gadget", PackageKind.PIP, recipe=str(source))

        artifacts = WheelBuilder(self._driver(runner)).build(entry, self.context)

        self.assertEqual(artifacts, [stale])
        self.assertEqual(stale.read_bytes(), b"new")
        self.assertFalse((wheel_dir / leftover.name).exists())

    def test_failed_output_query_fails_the_build(self) -> None:
        entry = ManifestEntry("widget", PackageKind.CONDA, recipe=str(self._recipe("widget")))
        runner = ScriptedRunner([("mamba build --output ", 1, "")])
        publisher = RecordingPublisher()
        pipeline = BuildPipeline(self._driver(runner), self.console, publisher=publisher)

        result = pipeline.run([entry], PackageKind.CONDA, self.context)

        self.assertFalse(result.ok)
        self.assertIn("unable to query conda build outputs", result.records[0].error)
        self.assertEqual(result.built, [])
        self.assertEqual(publisher.calls, [])


class SimpleIndexTests(unittest.TestCase):
    def test_writes_project_pages(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            wheel_dir = Path(temp)
            (wheel_dir / "My_Pkg-1.0-py3-none-any.whl").write_bytes(b"")
            (wheel_dir / "My_Pkg-1.1-py3-none-any.whl").write_bytes(b"")
            (wheel_dir / "other-2.0-py3-none-any.whl").write_bytes(b"")

            index_root = write_simple_index(wheel_dir)

            root_page = (index_root / "index.html").read_text()
            self.assertIn('<a href="my-pkg/">my-pkg</a>', root_page)
            self.assertIn('<a href="other/">other</a>', root_page)
            project_page = (index_root / "my-pkg" / "index.html").read_text()
            self.assertIn('href="../../My_Pkg-1.0-py3-none-any.whl"', project_page)
            self.assertIn('href="../../My_Pkg-1.1-py3-none-any.whl"', project_page)

    def test_normalize_project_name(self) -> None:
        self.assertEqual(normalize_project_name("Foo.Bar__baz"), "foo-bar-baz")


class PublisherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.artifact = self.root / "widget-1.0-0.conda"
        self.artifact.write_bytes(b"package")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_staging_copies_into_channel_directories(self) -> None:
        publisher = StagingPublisher(quiet_console(), self.root / "stage" / "conda", self.root / "stage" / "wheels")

        results = publisher.publish([self.artifact], "linux-64")

        self.assertTrue(results[0].ok)
        self.assertTrue((self.root / "stage" / "conda" / "linux-64" / self.artifact.name).exists())
        self.assertEqual(publisher.destination_for(WHEEL_CHANNEL), self.root / "stage" / "wheels")

    def test_staging_keeps_artifact_subdir_and_index(self) -> None:
        channel = self.root / "out"
        noarch = channel / "noarch"
        noarch.mkdir(parents=True)
        artifact = noarch / "widget-1.0-py_0.conda"
        artifact.write_bytes(b"package")
        (noarch / "repodata.json").write_text('{"packages.conda": {"widget-1.0-py_0.conda": {}}}')
        (channel / "channeldata.json").write_text("{}")
        stage = self.root / "stage" / "conda"
        publisher = StagingPublisher(quiet_console(), stage, self.root / "stage" / "wheels")

        results = publisher.publish([artifact], "linux-64")

        self.assertEqual(results[0].destination, str(stage / "noarch"))
        self.assertTrue((stage / "noarch" / artifact.name).exists())
        self.assertFalse((stage / "linux-64").exists())
        self.assertIn("widget-1.0-py_0.conda", (stage / "noarch" / "repodata.json").read_text())
        self.assertTrue((stage / "channeldata.json").exists())

    def test_staging_reports_missing_files(self) -> None:
        publisher = StagingPublisher(quiet_console(), self.root / "stage" / "conda", self.root / "stage" / "wheels")
        results = publisher.publish([self.root / "missing.conda"], "linux-64")
        self.assertFalse(results[0].ok)

    def test_staging_dry_run_copies_nothing(self) -> None:
        publisher = StagingPublisher(
            quiet_console(dry_run=True), self.root / "stage" / "conda", self.root / "stage" / "wheels"
        )
        results = publisher.publish([self.artifact], "linux-64")
        self.assertTrue(results[0].ok)
        self.assertFalse((self.root / "stage").exists())

    def test_jfrog_uploads_each_artifact(self) -> None:
        runner = ScriptedRunner([("jf rt upload", 1, "")])
        settings = JFrogSettings(url="https://example.jfrog.io/artifactory", repo="deliveries")
        publisher = JFrogPublisher(runner, quiet_console(), settings, EnvironmentStore(), prefix="/demo-1.0/")

        results = publisher.publish([self.artifact], "linux-64")

        self.assertEqual(
            runner.commands,
            [
                "jf rt upload --url=https://example.jfrog.io/artifactory --flat=true "
                f"{self.artifact} deliveries/demo-1.0/linux-64/"
            ],
        )
        self.assertFalse(results[0].ok)
        self.assertEqual(results[0].message, "exit code 1")

    def test_jfrog_uploads_into_artifact_subdir(self) -> None:
        noarch = self.root / "out" / "noarch"
        noarch.mkdir(parents=True)
        artifact = noarch / "widget-1.0-py_0.conda"
        artifact.write_bytes(b"package")
        runner = ScriptedRunner()
        settings = JFrogSettings(url="https://example.jfrog.io/artifactory", repo="deliveries")
        publisher = JFrogPublisher(runner, quiet_console(), settings, EnvironmentStore(), prefix="demo-1.0")

        results = publisher.publish([artifact], "linux-64")

        self.assertEqual(results[0].destination, "deliveries/demo-1.0/noarch/")
        self.assertTrue(runner.commands[0].endswith(" deliveries/demo-1.0/noarch/"))

    def test_jfrog_requires_url_and_repo(self) -> None:
        with self.assertRaises(ValueError):
            JFrogPublisher(ScriptedRunner(), quiet_console(), JFrogSettings(url="https://x"), EnvironmentStore(), prefix="p")


if __name__ == "__main__":
    unittest.main()
