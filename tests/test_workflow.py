"""Tests for the apply workflow."""

from __future__ import annotations

from codeapply.pipeline.progress import NullProgress
from codeapply.pipeline.workflow import (
    ApplyContext,
    ApplyPipeline,
    route_after_files,
    route_after_packages,
)
from codeapply.sandbox.exceptions import SandboxExecutionError
from codeapply.schemas import CommandResult, CompensationOutcome, CompensationStatus, ParsedFile, ParsedResponse


BUTTON_RESPONSE = """
<explanation>A reusable button.</explanation>
<file path="src/Button.jsx">
import debounce from 'lodash/debounce';

export default function Button() {
  return <button onClick={debounce(() => {}, 100)}>Click</button>;
}
</file>
"""


class StubMorph:
    def __init__(self):
        self.calls = []

    async def merge(self, instructions: str, code: str, update: str) -> str:
        self.calls.append(update)
        return update


class StubCompleter:
    def __init__(self, outcome: CompensationOutcome):
        self.outcome = outcome
        self.requests = []

    async def complete(self, missing, sandbox_id):
        self.requests.append((missing, sandbox_id))
        return self.outcome.model_copy(update={"missing_imports": missing})


def _context(provider, settings, **kwargs) -> ApplyContext:
    kwargs.setdefault("progress", NullProgress())
    return ApplyContext(sandbox_id=provider.sandbox_id, provider=provider, settings=settings, **kwargs)


def _types(progress: NullProgress) -> list[str]:
    return [e["type"] for e in progress.events]


class TestFreshGeneration:
    async def test_button_with_lodash(self, provider, settings):
        ctx = _context(provider, settings)

        run = await ApplyPipeline(ctx).run(BUTTON_RESPONSE)
        result = run.result

        assert result.files_created == ["src/Button.jsx", "src/App.jsx", "src/index.css"]
        assert result.files_updated == []
        assert result.packages_installed == ["lodash"]
        assert result.errors == []
        assert "import Button from './Button';" in provider.files["src/App.jsx"]
        assert "<Button />" in provider.files["src/App.jsx"]
        assert run.parsed.explanation == "A reusable button."
        assert run.message == "Applied 3 files successfully"
        assert run.warning is None

    async def test_declared_package_and_synthesized_app(self, provider, settings):
        response = '<file path="src/Button.jsx">export default ()=>null;</file><package>lodash</package>'
        ctx = _context(provider, settings)

        result = (await ApplyPipeline(ctx).run(response)).result

        assert "src/Button.jsx" in result.files_created
        assert "src/App.jsx" in result.files_created
        assert provider.installed == [["lodash"]]
        assert "import Button from './Button';" in provider.files["src/App.jsx"]

    async def test_event_order(self, provider, settings):
        ctx = _context(provider, settings)

        await ApplyPipeline(ctx).run(BUTTON_RESPONSE)
        types = _types(ctx.progress)

        assert types[0] == "start"
        assert types[-1] == "complete"
        assert types.count("complete") == 1
        assert types.index("package-progress") < types.index("file-complete")
        complete = ctx.progress.events[-1]
        assert complete["results"]["filesCreated"][0] == "src/Button.jsx"

    async def test_known_files_drive_update_classification(self, provider, settings):
        ctx = _context(provider, settings, known_files={"src/Button.jsx"})

        result = (await ApplyPipeline(ctx).run(BUTTON_RESPONSE)).result

        assert result.files_updated == ["src/Button.jsx"]
        assert "src/Button.jsx" not in result.files_created
        assert not set(result.files_created) & set(result.files_updated)

    async def test_generated_app_not_overwritten_when_present(self, provider, settings):
        response = '<file path="src/App.jsx">export default function App() { return null; }</file>'
        ctx = _context(provider, settings)

        result = (await ApplyPipeline(ctx).run(response)).result

        assert result.files_created == ["src/App.jsx"]
        assert provider.files["src/App.jsx"] == "export default function App() { return null; }"

    async def test_protected_config_files_skipped(self, provider, settings):
        response = (
            '<file path="package.json">{"name": "hijack"}</file>\n'
            '<file path="src/Card.jsx">export default () => null;</file>'
        )
        ctx = _context(provider, settings)

        result = (await ApplyPipeline(ctx).run(response)).result

        assert "package.json" not in result.files_created
        assert "hijack" not in provider.files["package.json"]
        assert "src/Card.jsx" in result.files_created

    async def test_write_failure_does_not_stop_other_files(self, provider, settings):
        provider.write_failures.add("src/Broken.jsx")
        response = (
            '<file path="src/Broken.jsx">export default () => null;</file>\n'
            '<file path="src/Fine.jsx">export default () => null;</file>'
        )
        ctx = _context(provider, settings, is_edit=True)

        result = (await ApplyPipeline(ctx).run(response)).result

        assert result.files_created == ["src/Fine.jsx"]
        assert len(result.errors) == 1
        assert "src/Broken.jsx" in result.errors[0]
        assert "file-error" in _types(ctx.progress)

    async def test_installer_crash_is_recorded(self, provider, settings):
        class ExplodingInstaller:
            async def install(self, packages, sandbox_id, provider, progress):
                raise RuntimeError("npm missing")

        ctx = _context(provider, settings, installer=ExplodingInstaller())

        result = (await ApplyPipeline(ctx).run(BUTTON_RESPONSE)).result

        assert "src/Button.jsx" in result.files_created
        assert result.errors == ["Package installation failed: npm missing"]

    async def test_invalid_package_names_rejected(self, provider, settings):
        response = '<file path="src/A.jsx">a</file><packages>lodash; touch /tmp/x, clsx</packages>'
        ctx = _context(provider, settings, is_edit=True)

        result = (await ApplyPipeline(ctx).run(response)).result

        assert provider.installed == [["clsx"]]
        assert result.packages_failed == ["lodash; touch /tmp/x"]
        assert result.errors == ["Invalid package name: lodash; touch /tmp/x"]

    async def test_package_hints_merged(self, provider, settings):
        ctx = _context(provider, settings, package_hints=["clsx", "react"], is_edit=True)

        result = (await ApplyPipeline(ctx).run(BUTTON_RESPONSE)).result

        assert provider.installed == [["clsx", "lodash"]]
        assert result.packages_installed == ["clsx", "lodash"]


class TestCommands:
    async def test_commands_run_in_order_despite_failures(self, provider, settings):
        provider.command_results["npm run lint"] = CommandResult(stderr="lint errors", exit_code=1, success=False)
        provider.command_results["npm run broken"] = SandboxExecutionError("connection lost")
        response = (
            "<command>npm run lint</command>\n"
            "<command>npm run broken</command>\n"
            "<command>npm run build</command>"
        )
        ctx = _context(provider, settings)

        result = (await ApplyPipeline(ctx).run(response)).result

        assert provider.commands == ["npm run lint", "npm run broken", "npm run build"]
        assert result.commands_executed == ["npm run lint", "npm run build"]
        assert result.errors[0] == "Command 'npm run lint' exited with code 1"
        assert result.errors[1].startswith("Failed to execute npm run broken")
        outputs = [e for e in ctx.progress.events if e["type"] == "command-output"]
        assert outputs == [
            {"type": "command-output", "command": "npm run lint", "output": "lint errors", "stream": "stderr"}
        ]


class TestTargetedEdits:
    def _morph_settings(self, settings):
        settings.morph_enabled = True
        settings.morph_api_key = "morph-key"
        return settings

    async def test_patched_files_skip_full_file_pass(self, provider, settings):
        provider.files["src/App.jsx"] = "old app"
        morph = StubMorph()
        response = (
            '<edit target_file="src/App.jsx"><instructions>retitle</instructions>'
            "<update>patched app</update></edit>\n"
            '<file path="src/App.jsx">full rewrite</file>\n'
            '<file path="src/Footer.jsx">export default () => null;</file>'
        )
        ctx = _context(
            provider,
            self._morph_settings(settings),
            is_edit=True,
            morph=morph,
            known_files={"src/App.jsx"},
        )

        result = (await ApplyPipeline(ctx).run(response)).result

        assert provider.files["src/App.jsx"] == "patched app"
        assert result.files_updated == ["src/App.jsx"]
        assert result.files_created == ["src/Footer.jsx"]
        assert morph.calls == ["patched app"]

    async def test_no_edit_blocks_falls_back_to_full_files(self, provider, settings):
        ctx = _context(provider, self._morph_settings(settings), is_edit=True, morph=StubMorph())

        result = (await ApplyPipeline(ctx).run('<file path="src/A.jsx">a</file>')).result

        assert result.files_created == ["src/A.jsx"]
        warnings = [e for e in ctx.progress.events if e["type"] == "warning"]
        assert "no <edit> blocks" in warnings[0]["message"]

    async def test_failed_edit_reported(self, provider, settings):
        response = '<edit target_file="src/Gone.jsx"><update>x</update></edit>'
        ctx = _context(provider, self._morph_settings(settings), is_edit=True, morph=StubMorph())

        result = (await ApplyPipeline(ctx).run(response)).result

        assert result.files_updated == []
        assert result.errors[0].startswith("Morph apply failed for src/Gone.jsx")

    def test_edits_route_only_in_morph_mode(self, provider, settings):
        ctx = _context(provider, settings, is_edit=True, morph=StubMorph())
        state = {"ctx": ctx, "edits": ["placeholder"]}
        assert route_after_packages(state) == "files"


class TestMissingImports:
    RESPONSE = (
        '<file path="src/App.jsx">\n'
        "import Header from './components/Header';\n"
        "import Hero from './components/Hero';\n"
        "import './index.css';\n"
        "export default function App() { return <><Header /><Hero /></>; }\n"
        "</file>\n"
        '<file path="src/components/Hero.jsx">export default () => null;</file>'
    )

    async def test_reported_without_completer(self, provider, settings):
        ctx = _context(provider, settings)

        run = await ApplyPipeline(ctx).run(self.RESPONSE)

        assert run.missing_imports == ["./components/Header"]
        assert run.compensation.status == CompensationStatus.SKIPPED
        assert run.warning == "Missing 1 imported components: ./components/Header"
        response = run.to_response()
        assert response.missing_imports == ["./components/Header"]
        assert not response.auto_completed

    async def test_known_files_count_as_present(self, provider, settings):
        ctx = _context(provider, settings, known_files={"src/components/Header.jsx"})

        run = await ApplyPipeline(ctx).run(self.RESPONSE)

        assert run.missing_imports == []
        assert run.warning is None

    async def test_completer_success(self, provider, settings):
        completer = StubCompleter(
            CompensationOutcome(
                status=CompensationStatus.SUCCEEDED,
                components=["src/components/Header.jsx"],
            )
        )
        ctx = _context(provider, settings, completer=completer)

        run = await ApplyPipeline(ctx).run(self.RESPONSE)

        assert completer.requests == [(["./components/Header"], "fake-sandbox-1")]
        assert "src/components/Header.jsx" in run.result.files_created
        assert run.message == "Applied 3 files + auto-generated 1 missing components"
        response = run.to_response()
        assert response.auto_completed
        assert response.auto_completed_components == ["src/components/Header.jsx"]
        assert response.warning is None

    async def test_completer_failure_keeps_warning(self, provider, settings):
        completer = StubCompleter(CompensationOutcome(status=CompensationStatus.FAILED, error="quota"))
        ctx = _context(provider, settings, completer=completer)

        run = await ApplyPipeline(ctx).run(self.RESPONSE)

        assert run.compensation.status == CompensationStatus.FAILED
        assert run.warning is not None
        warning = [e for e in ctx.progress.events if e["type"] == "warning"][-1]
        assert warning["message"].endswith("(quota)")


class TestRouting:
    def test_scaffold_only_for_fresh_generation_without_app(self, provider, settings):
        parsed = ParsedResponse(files=[ParsedFile(path="src/A.jsx")])
        fresh = {"ctx": _context(provider, settings), "parsed": parsed, "files": parsed.files}
        edit = {"ctx": _context(provider, settings, is_edit=True), "parsed": parsed, "files": parsed.files}
        empty = {"ctx": _context(provider, settings), "parsed": ParsedResponse(), "files": []}

        assert route_after_files(fresh) == "scaffold"
        assert route_after_files(edit) == "commands"
        assert route_after_files(empty) == "commands"
