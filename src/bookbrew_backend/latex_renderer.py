"""
Renderer that drives the Pandoc / XeLaTeX / pdftk toolchain.

Every build runs inside the scratch directory the scheduler hands over:

1. The workspace is prepared: ``content.md`` with image references pointed
   at ``images/``, the uploaded images it and the metadata use, the selected
   templates with their variables and boolean switches applied, fonts,
   ``metadata.json``.
2. ``convert`` runs Pandoc (Markdown → ``content.tex``), optionally after
   obsidian-export, and compiles ``main.tex`` (the layout) with XeLaTeX,
   twice so the table of contents resolves.
3. ``compile_cover`` compiles ``cover.tex`` the same way.
4. ``impose`` builds the document, then pads, reorders, splits, imposes and
   merges it with pdftk and the impose template (see ``imposition``).

Failures are classified for the scheduler: a tool that exceeds the render
deadline or an I/O error is transient; missing templates, missing tools and
LaTeX runs that do not produce a usable PDF are permanent.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Event
from typing import List, Optional, Sequence, Tuple

from .configuration import RendererSettings
from .errors import PermanentRenderError, RenderCanceled, RenderError, TransientRenderError
from .imposition import (
    ImpositionPlan,
    blank_page_tex,
    parse_page_count,
    parse_page_size_mm,
    plan_imposition,
    set_compensation,
)
from .models import BuildKind, BuildRequest, ConversionMethod, TemplateSelection
from .preprocessing import (
    convert_inline_footnotes,
    match_uploads,
    metadata_images,
    normalize_markdown_images,
    referenced_images,
    unescape_exported_footnotes,
)
from .renderer import RendererAdapter
from .templates import TemplateLibrary, TemplateNotFound, apply_template_values, clean_metadata
from .utils import ensure_directory

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


@dataclass
class _Invocation:
    """Per-call state: where we work, until when, and whether to stop."""

    work_dir: Path
    deadline: Optional[float]
    cancel_event: Optional[Event]

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self, step: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RenderCanceled(f"Render canceled before {step}")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise TransientRenderError(f"Render timeout reached before {step}")


def _tail(output: str) -> str:
    return output[-OUTPUT_TAIL_CHARS:].strip()


class LatexRenderer(RendererAdapter):
    """
    Concrete renderer for the Markdown → LaTeX → PDF pipeline.

    Attributes:
        settings: Tool names, template directories and output checks
        library: Resolves template names to files
        poll_interval: How often running tools are checked for cancellation
            and timeout, in seconds
    """

    supports_cancellation = True

    def __init__(
        self,
        settings: RendererSettings,
        library: TemplateLibrary | None = None,
        poll_interval: float = 0.2,
    ) -> None:
        self.settings = settings
        self.library = library or TemplateLibrary(Path(settings.typeset_dir), Path(settings.user_templates_dir))
        self.poll_interval = poll_interval

    def render(
        self,
        request: BuildRequest,
        work_dir: Path,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[Event] = None,
    ) -> bytes:
        deadline = time.monotonic() + timeout if timeout else None
        invocation = _Invocation(work_dir=Path(work_dir), deadline=deadline, cancel_event=cancel_event)
        try:
            self._prepare_workspace(request, invocation)
            if request.kind == BuildKind.CONVERT:
                output = self._build_document(invocation, request.template.conversion_method)
            elif request.kind == BuildKind.COMPILE_COVER:
                output = self._build_cover(invocation)
            else:
                output = self._impose(request.template, invocation)
            return output.read_bytes()
        except TemplateNotFound as exc:
            raise PermanentRenderError(str(exc)) from exc
        except RenderError:
            raise
        except OSError as exc:
            raise TransientRenderError(f"I/O error while rendering: {exc}") from exc

    # Workspace

    def _required_templates(self, request: BuildRequest) -> List[Tuple[str, str, bool]]:
        template = request.template
        if request.kind == BuildKind.CONVERT:
            return [("layout", template.layout, template.layout_is_user_template)]
        if request.kind == BuildKind.COMPILE_COVER:
            return [("cover", template.cover, template.cover_is_user_template)]
        return [
            ("layout", template.layout, template.layout_is_user_template),
            ("impose", template.impose, template.impose_is_user_template),
        ]

    def _prepare_workspace(self, request: BuildRequest, invocation: _Invocation) -> None:
        invocation.check("workspace preparation")
        work_dir = invocation.work_dir
        template = request.template
        metadata = clean_metadata(template.metadata)

        content = normalize_markdown_images(request.source_content.decode("utf-8", errors="replace"))
        (work_dir / "content.md").write_bytes(content.encode("utf-8"))
        images_dir = ensure_directory(work_dir / "images")
        wanted = list(dict.fromkeys(referenced_images(content) + metadata_images(template.metadata)))
        self._copy_images(wanted, images_dir)

        for category, name, user_template in self._required_templates(request):
            source = self.library.resolve(category, name, user_id=template.user_id, user_template=user_template)
            tex = source.read_text(encoding="utf-8", errors="replace")
            tex = apply_template_values(tex, metadata, template.boolean_options)
            (work_dir / f"{category}.tex").write_text(tex, encoding="utf-8")
            for font_dir in self.library.font_directories(category, template.user_id if user_template else None):
                shutil.copytree(font_dir, work_dir / "fonts", dirs_exist_ok=True)
            logger.debug(f"Prepared {category} template {source.name} in {work_dir}")

        (work_dir / "metadata.json").write_text(json.dumps(metadata, indent=2, ensure_ascii=False), encoding="utf-8")

    def _copy_images(self, names: List[str], images_dir: Path) -> None:
        """Copy uploaded images into the workspace; missing ones are left to LaTeX to report."""
        if not names:
            return
        uploads_dir = Path(self.settings.uploads_dir)
        uploads = [path.name for path in uploads_dir.iterdir() if path.is_file()] if uploads_dir.is_dir() else []
        found = match_uploads(names, sorted(uploads))
        for name in names:
            upload = found.get(name)
            if upload is None:
                logger.warning(f"Image {name} not found in {uploads_dir}")
                continue
            shutil.copyfile(uploads_dir / upload, images_dir / name)
        logger.debug(f"Copied {len(found)} of {len(names)} image(s) into {images_dir}")

    # Tool execution

    def _environment(self) -> dict:
        typeset_fonts = str(Path(self.settings.typeset_dir).resolve() / "fonts")
        env = dict(os.environ)
        env["TEXINPUTS"] = f".:fonts:{typeset_fonts}:"
        env["OSFONTDIR"] = f"fonts:{typeset_fonts}"
        return env

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        process.kill()
        process.communicate()

    def _run(self, args: Sequence[str], invocation: _Invocation, cwd: Path | None = None) -> Tuple[int, str]:
        """
        Run one tool, watching for cancellation and the render deadline.

        Returns:
            Exit code and combined stdout/stderr
        """
        invocation.check(args[0])
        logger.debug(f"Running {' '.join(args)} in {cwd or invocation.work_dir}")
        try:
            process = subprocess.Popen(
                list(args),
                cwd=cwd or invocation.work_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self._environment(),
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as exc:
            raise PermanentRenderError(f"Renderer tool not available: {args[0]}") from exc

        while True:
            try:
                output, _ = process.communicate(timeout=self.poll_interval)
                return process.returncode, output or ""
            except subprocess.TimeoutExpired:
                if invocation.cancel_event is not None and invocation.cancel_event.is_set():
                    self._kill(process)
                    raise RenderCanceled(f"Render canceled while running {args[0]}")
                remaining = invocation.remaining()
                if remaining is not None and remaining <= 0:
                    self._kill(process)
                    raise TransientRenderError(f"{args[0]} exceeded the render timeout")

    def _run_checked(self, args: Sequence[str], invocation: _Invocation, cwd: Path | None = None) -> str:
        returncode, output = self._run(args, invocation, cwd=cwd)
        if returncode != 0:
            raise PermanentRenderError(f"{args[0]} failed with exit code {returncode}: {_tail(output)}")
        return output

    def _is_valid_output(self, path: Path) -> bool:
        return path.is_file() and path.stat().st_size >= self.settings.min_output_bytes

    def _compile_latex(self, tex_name: str, invocation: _Invocation, engine: str | None = None, passes: int | None = None) -> Path:
        """
        Compile a ``.tex`` file, tolerating a non-zero exit when the PDF is usable.

        LaTeX exits non-zero on many harmless warnings, so success is judged
        by the produced file rather than the exit code.
        """
        engine = engine or self.settings.xelatex_binary
        pdf_path = invocation.work_dir / f"{Path(tex_name).stem}.pdf"
        returncode, output = 0, ""
        for _ in range(passes or self.settings.latex_passes):
            returncode, output = self._run([engine, "-interaction=nonstopmode", "-no-shell-escape", tex_name], invocation)

        if not self._is_valid_output(pdf_path):
            raise PermanentRenderError(f"{engine} did not produce a usable {pdf_path.name}: {_tail(output)}")
        if returncode != 0:
            logger.warning(f"{engine} exited with {returncode} for {tex_name} but produced {pdf_path.name}")
        return pdf_path

    # Pipelines

    def _build_document(self, invocation: _Invocation, method: ConversionMethod = ConversionMethod.PANDOC_DIRECT) -> Path:
        work_dir = invocation.work_dir
        source = self._export_obsidian(invocation) if method == ConversionMethod.OBSIDIAN_EXPORT else "content.md"
        self._run_checked([self.settings.pandoc_binary, source, "-o", "content.tex"], invocation)
        shutil.copyfile(work_dir / "layout.tex", work_dir / "main.tex")
        return self._compile_latex("main.tex", invocation)

    def _export_obsidian(self, invocation: _Invocation) -> str:
        """
        Run the vault exporter over ``content.md`` and keep its output for Pandoc.

        The exporter resolves Obsidian-only syntax; its escaped inline
        footnotes are restored and turned into numbered footnotes.

        Returns:
            Name of the Markdown file to hand to Pandoc, relative to the workspace
        """
        work_dir = invocation.work_dir
        export_dir = work_dir / "obsidian"
        input_dir = ensure_directory(export_dir / "input")
        output_dir = ensure_directory(export_dir / "output")
        shutil.copyfile(work_dir / "content.md", input_dir / "content.md")

        self._run_checked([self.settings.obsidian_export_binary, "obsidian/input", "obsidian/output"], invocation)

        exported = sorted(output_dir.rglob("*.md"))
        if not exported:
            raise PermanentRenderError(f"{self.settings.obsidian_export_binary} did not produce a Markdown file")
        text = unescape_exported_footnotes(exported[0].read_text(encoding="utf-8", errors="replace"))
        (work_dir / "content-export.md").write_bytes(convert_inline_footnotes(text).encode("utf-8"))
        shutil.rmtree(export_dir, ignore_errors=True)
        logger.debug(f"Exported {exported[0].name} through {self.settings.obsidian_export_binary}")
        return "content-export.md"

    def _build_cover(self, invocation: _Invocation) -> Path:
        return self._compile_latex("cover.tex", invocation)

    def _impose(self, template: TemplateSelection, invocation: _Invocation) -> Path:
        work_dir = invocation.work_dir
        pdftk = self.settings.pdftk_binary

        document = self._build_document(invocation, template.conversion_method)
        source = work_dir / "source.pdf"
        shutil.copyfile(document, source)

        dump = self._run_checked([pdftk, "source.pdf", "dump_data"], invocation)
        total_pages = parse_page_count(dump)
        if total_pages == 0:
            raise PermanentRenderError("Could not determine the page count of the document")

        plan = plan_imposition(template.impose, total_pages, template.paper_thickness)
        logger.info(
            f"Imposing {total_pages} pages as {plan.impose_type} of {plan.pages_per_unit} "
            f"({plan.target_pages} pages, {len(plan.packages)} package(s))"
        )

        if plan.blank_pages:
            self._pad_with_blank_pages(plan, parse_page_size_mm(dump), invocation)
        if plan.needs_reorder:
            order = [str(page) for page in plan.page_order]
            self._run_checked([pdftk, "source.pdf", "cat", *order, "output", "reordered.pdf"], invocation)
            os.replace(work_dir / "reordered.pdf", source)

        packages_dir = ensure_directory(work_dir / "packages")
        imposed_dir = ensure_directory(work_dir / "imposed")
        if len(plan.packages) == 1:
            shutil.copyfile(source, packages_dir / plan.packages[0].filename)
        else:
            for package in plan.packages:
                self._run_checked(
                    [pdftk, "source.pdf", "cat", f"{package.first_page}-{package.last_page}", "output", f"packages/{package.filename}"],
                    invocation,
                )

        impose_tex = work_dir / "impose.tex"
        for package in plan.packages:
            shutil.copyfile(packages_dir / package.filename, work_dir / "export.pdf")
            if package.compensation_mm is not None:
                impose_tex.write_text(set_compensation(impose_tex.read_text(encoding="utf-8"), package.compensation_mm), encoding="utf-8")
            try:
                imposed = self._compile_latex("impose.tex", invocation, passes=1)
            except PermanentRenderError:
                logger.warning(f"Retrying imposition of {package.filename} once")
                imposed = self._compile_latex("impose.tex", invocation, passes=1)
            os.replace(imposed, imposed_dir / f"imposed_{package.filename}")

        final = work_dir / "final_imposed.pdf"
        imposed_files = sorted(path.name for path in imposed_dir.glob("imposed_*.pdf"))
        if len(imposed_files) == 1:
            shutil.copyfile(imposed_dir / imposed_files[0], final)
        else:
            self._run_checked([pdftk, *imposed_files, "cat", "output", "../final_imposed.pdf"], invocation, cwd=imposed_dir)
        if not self._is_valid_output(final):
            raise PermanentRenderError("Merging the imposed packages did not produce a usable PDF")
        return final

    def _pad_with_blank_pages(self, plan: ImpositionPlan, page_size: Tuple[float, float], invocation: _Invocation) -> None:
        work_dir = invocation.work_dir
        (work_dir / "blank.tex").write_text(blank_page_tex(*page_size), encoding="utf-8")
        self._run([self.settings.pdflatex_binary, "-interaction=nonstopmode", "blank.tex"], invocation)
        if not (work_dir / "blank.pdf").is_file():
            raise PermanentRenderError("Could not create the blank padding page")
        blanks = ["blank.pdf"] * plan.blank_pages
        self._run_checked([self.settings.pdftk_binary, "source.pdf", *blanks, "cat", "output", "padded.pdf"], invocation)
        os.replace(work_dir / "padded.pdf", work_dir / "source.pdf")
