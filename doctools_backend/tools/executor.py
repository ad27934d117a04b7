from __future__ import annotations

import asyncio
import logging
import os
import re
import secrets
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from ..errors import ToolExecutionError, ValidationError, sanitize_message
from ..security import output_file_name
from .bundle import bundle_outputs, collect_pages
from .html import prepare_html
from .runner import CommandRunner


logger = logging.getLogger(__name__)

PDF = frozenset({".pdf"})
OFFICE = frozenset({".doc", ".docx", ".odt", ".xls", ".xlsx", ".ods", ".html", ".htm"})
IMAGES = frozenset({".jpg", ".jpeg", ".png"})
HTML = frozenset({".html", ".htm"})

COMPRESSION_LEVELS = ("screen", "ebook", "printer", "prepress")
CONVERT_FORMATS = ("pdf", "docx", "odt", "ods", "xlsx")
_PAGE_RANGES_RE = re.compile(r"^\d+(-\d+)?(,\d+(-\d+)?)*$")
MAX_PASSWORD_CHARS = 128


@dataclass(frozen=True)
class ToolContext:
    session_id: str
    inputs: Sequence[Path]
    work_dir: Path
    options: Mapping[str, Any]
    runner: CommandRunner
    timeout: float

    def output(self, name: str) -> Path:
        return self.work_dir / name


ToolFn = Callable[[ToolContext], Awaitable[Path]]


@dataclass(frozen=True)
class Tool:
    """One named black-box transform: input paths in, one output file out."""

    name: str
    run: ToolFn
    output_label: str
    output_suffix: str | Callable[[Mapping[str, Any]], str]
    min_files: int = 1
    max_files: int | None = 1
    accepts: frozenset[str] | None = None
    check_options: Callable[[Mapping[str, Any]], None] | None = None

    def suffix_for(self, options: Mapping[str, Any]) -> str:
        if callable(self.output_suffix):
            return self.output_suffix(options)
        return self.output_suffix

    def validate(self, file_ids: Sequence[str], options: Mapping[str, Any]) -> None:
        count = len(file_ids)
        if count < self.min_files:
            raise ValidationError(f"'{self.name}' needs at least {self.min_files} file(s).")
        if self.max_files is not None and count > self.max_files:
            raise ValidationError(f"'{self.name}' accepts at most {self.max_files} file(s).")
        if self.accepts is not None:
            for file_id in file_ids:
                if Path(file_id).suffix.lower() not in self.accepts:
                    allowed = ", ".join(sorted(self.accepts))
                    raise ValidationError(f"'{self.name}' only accepts {allowed} files.")
        if self.check_options is not None:
            self.check_options(options)


# --- tool implementations ---------------------------------------------------

async def _merge(ctx: ToolContext) -> Path:
    out = ctx.output("merged.pdf")
    await ctx.runner.run(
        "qpdf",
        ["--empty", "--pages", *ctx.inputs, "--", out],
        cwd=ctx.work_dir,
        timeout=ctx.timeout,
    )
    return out


async def _compress(ctx: ToolContext) -> Path:
    out = ctx.output("compressed.pdf")
    level = str(ctx.options.get("level") or "ebook")
    await ctx.runner.run(
        "gs",
        [
            "-sDEVICE=pdfwrite",
            "-dCompatibilityLevel=1.4",
            f"-dPDFSETTINGS=/{level}",
            "-dNOPAUSE",
            "-dQUIET",
            "-dBATCH",
            "-dSAFER",
            f"-sOutputFile={out}",
            ctx.inputs[0],
        ],
        cwd=ctx.work_dir,
        timeout=ctx.timeout,
    )
    return out


async def _protect(ctx: ToolContext) -> Path:
    out = ctx.output("protected.pdf")
    password = str(ctx.options["password"])
    await ctx.runner.run(
        "qpdf",
        [
            "--encrypt",
            f"--user-password={password}",
            f"--owner-password={password}",
            "--bits=256",
            "--",
            ctx.inputs[0],
            out,
        ],
        cwd=ctx.work_dir,
        timeout=ctx.timeout,
    )
    return out


async def _split(ctx: ToolContext) -> Path:
    ranges = str(ctx.options.get("ranges") or "").replace(" ", "")
    source = ctx.inputs[0]
    if ranges:
        out = ctx.output("extracted.pdf")
        await ctx.runner.run(
            "qpdf",
            ["--empty", "--pages", source, ranges, "--", out],
            cwd=ctx.work_dir,
            timeout=ctx.timeout,
        )
        return out

    pages_dir = ctx.output("pages")
    pages_dir.mkdir()
    await ctx.runner.run(
        "qpdf",
        ["--split-pages", source, pages_dir / "page-%d.pdf"],
        cwd=ctx.work_dir,
        timeout=ctx.timeout,
    )
    pages = collect_pages(pages_dir, "page-*.pdf")
    if not pages:
        raise ToolExecutionError("Splitting produced no pages.")
    return bundle_outputs(pages, ctx.output("pages.zip"))


async def _soffice_convert(ctx: ToolContext, target: str, *, infilter: str | None = None) -> Path:
    source = ctx.inputs[0]
    profile = ctx.output("lo-profile")
    await ctx.runner.run(
        "soffice",
        [
            f"-env:UserInstallation={profile.as_uri()}",
            "--headless",
            "--invisible",
            *([f"--infilter={infilter}"] if infilter else []),
            "--convert-to",
            target,
            "--outdir",
            ctx.work_dir,
            source,
        ],
        cwd=ctx.work_dir,
        timeout=ctx.timeout,
    )
    expected = ctx.output(f"{source.stem}.{target}")
    if expected.is_file():
        return expected
    candidates = [p for p in ctx.work_dir.glob(f"*.{target}") if p.is_file()]
    if len(candidates) == 1:
        return candidates[0]
    raise ToolExecutionError("Conversion finished without producing an output file.")


async def _convert(ctx: ToolContext) -> Path:
    return await _soffice_convert(ctx, str(ctx.options.get("format") or "pdf").lower())


async def _pdf_to_docx(ctx: ToolContext) -> Path:
    # Without the import filter LibreOffice opens PDFs in Draw and cannot
    # export them as text documents.
    return await _soffice_convert(ctx, "docx", infilter="writer_pdf_import")


async def _pdfa(ctx: ToolContext) -> Path:
    out = ctx.output("pdfa.pdf")
    await ctx.runner.run(
        "gs",
        [
            "-dPDFA=2",
            "-dBATCH",
            "-dNOPAUSE",
            "-dQUIET",
            "-dNOOUTERSAVE",
            "-dPDFACompatibilityPolicy=1",
            "-sColorConversionStrategy=RGB",
            "-sDEVICE=pdfwrite",
            f"-sOutputFile={out}",
            ctx.inputs[0],
        ],
        cwd=ctx.work_dir,
        timeout=ctx.timeout,
    )
    return out


async def _pdf_to_jpg(ctx: ToolContext) -> Path:
    dpi = int(ctx.options.get("dpi") or 150)
    pages_dir = ctx.output("pages")
    pages_dir.mkdir()
    await ctx.runner.run(
        "gs",
        [
            "-sDEVICE=jpeg",
            f"-r{dpi}",
            "-dJPEGQ=90",
            "-dNOPAUSE",
            "-dBATCH",
            "-dQUIET",
            "-dSAFER",
            f"-sOutputFile={pages_dir / 'page-%03d.jpg'}",
            ctx.inputs[0],
        ],
        cwd=ctx.work_dir,
        timeout=ctx.timeout,
    )
    pages = collect_pages(pages_dir, "page-*.jpg")
    if not pages:
        raise ToolExecutionError("Rendering produced no images.")
    return bundle_outputs(pages, ctx.output("images.zip"))


async def _images_to_pdf(ctx: ToolContext) -> Path:
    out = ctx.output("images.pdf")
    await ctx.runner.run("magick", [*ctx.inputs, out], cwd=ctx.work_dir, timeout=ctx.timeout)
    return out


async def _html_to_pdf(ctx: ToolContext) -> Path:
    out = ctx.output("document.pdf")
    raw = ctx.inputs[0].read_text(encoding="utf-8", errors="replace")
    prepared = prepare_html(raw)
    if prepared.removed_elements:
        logger.info("[%s] html-to-pdf stripped %d active/remote element(s)", ctx.session_id, prepared.removed_elements)

    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch()
            try:
                page = await browser.new_page(java_script_enabled=False)
                await page.set_content(prepared.html, wait_until="load")
                await page.pdf(
                    path=str(out),
                    format=str(ctx.options.get("pageFormat") or "A4"),
                    print_background=True,
                    margin={"top": "1cm", "right": "1cm", "bottom": "1cm", "left": "1cm"},
                )
            finally:
                await browser.close()
    except PlaywrightError as exc:
        message = sanitize_message(f"HTML rendering failed: {exc}", roots=(ctx.work_dir.parent,))
        raise ToolExecutionError(message) from exc
    return out


# --- option checks ------------------------------------------------------------

def _check_compress(options: Mapping[str, Any]) -> None:
    level = options.get("level")
    if level is not None and level not in COMPRESSION_LEVELS:
        raise ValidationError(f"Compression level must be one of: {', '.join(COMPRESSION_LEVELS)}.")


def _check_protect(options: Mapping[str, Any]) -> None:
    password = options.get("password")
    if not isinstance(password, str) or not password:
        raise ValidationError("A password is required to protect a PDF.")
    if len(password) > MAX_PASSWORD_CHARS or "\x00" in password:
        raise ValidationError("Password is too long or contains invalid characters.")


def _check_split(options: Mapping[str, Any]) -> None:
    ranges = options.get("ranges")
    if ranges in (None, ""):
        return
    if not isinstance(ranges, str) or not _PAGE_RANGES_RE.match(ranges.replace(" ", "")):
        raise ValidationError("Page ranges must look like '1-3,5'.")


def _check_convert(options: Mapping[str, Any]) -> None:
    target = options.get("format")
    if target is not None and str(target).lower() not in CONVERT_FORMATS:
        raise ValidationError(f"Target format must be one of: {', '.join(CONVERT_FORMATS)}.")


def _check_pdf_to_jpg(options: Mapping[str, Any]) -> None:
    dpi = options.get("dpi")
    if dpi is None:
        return
    if isinstance(dpi, bool) or not isinstance(dpi, int) or not 72 <= dpi <= 300:
        raise ValidationError("dpi must be an integer between 72 and 300.")


def _check_html(options: Mapping[str, Any]) -> None:
    page_format = options.get("pageFormat")
    if page_format is not None and page_format not in ("A4", "A3", "A5", "Letter", "Legal"):
        raise ValidationError("Unsupported page format.")


def _split_suffix(options: Mapping[str, Any]) -> str:
    return ".pdf" if options.get("ranges") else ".zip"


def _convert_suffix(options: Mapping[str, Any]) -> str:
    return "." + str(options.get("format") or "pdf").lower()


def default_tools() -> dict[str, Tool]:
    tools = [
        Tool("merge", _merge, "merged", ".pdf", min_files=2, max_files=None, accepts=PDF),
        Tool("compress", _compress, "compressed", ".pdf", accepts=PDF, check_options=_check_compress),
        Tool("protect", _protect, "protected", ".pdf", accepts=PDF, check_options=_check_protect),
        Tool("split", _split, "split", _split_suffix, accepts=PDF, check_options=_check_split),
        Tool("convert", _convert, "converted", _convert_suffix, accepts=OFFICE, check_options=_check_convert),
        Tool("pdf-to-docx", _pdf_to_docx, "converted", ".docx", accepts=PDF),
        Tool("pdfa", _pdfa, "pdfa", ".pdf", accepts=PDF),
        Tool("pdf-to-jpg", _pdf_to_jpg, "jpg", ".zip", accepts=PDF, check_options=_check_pdf_to_jpg),
        Tool("images-to-pdf", _images_to_pdf, "images", ".pdf", max_files=None, accepts=IMAGES),
        Tool("html-to-pdf", _html_to_pdf, "html", ".pdf", accepts=HTML, check_options=_check_html),
    ]
    return {tool.name: tool for tool in tools}


# --- executor -----------------------------------------------------------------

@dataclass
class ToolExecutor:
    """Runs a named tool against ordered input paths.

    Each run gets a private work directory inside the session directory. Only
    the final output is moved next to the inputs, and the work directory is
    always removed, so a failed job never leaves partial output behind.
    """

    runner: CommandRunner = field(default_factory=CommandRunner)
    timeout_seconds: float = 300.0
    tools: dict[str, Tool] = field(default_factory=default_tools)

    def names(self) -> Iterable[str]:
        return sorted(self.tools)

    def get(self, name: str) -> Tool:
        tool = self.tools.get(name)
        if tool is None:
            raise ValidationError(f"Unknown tool '{name}'. Available: {', '.join(self.names())}.")
        return tool

    def validate(self, name: str, file_ids: Sequence[str], options: Mapping[str, Any]) -> Tool:
        tool = self.get(name)
        tool.validate(file_ids, options)
        return tool

    async def execute(
        self,
        name: str,
        session_id: str,
        session_dir: Path,
        inputs: Sequence[Path],
        options: Mapping[str, Any] | None = None,
    ) -> str:
        """Run ``name`` and return the output file name inside ``session_dir``."""
        tool = self.get(name)
        options = dict(options or {})
        work_dir = session_dir / f".work-{secrets.token_hex(4)}"
        work_dir.mkdir()
        ctx = ToolContext(
            session_id=session_id,
            inputs=list(inputs),
            work_dir=work_dir,
            options=options,
            runner=self.runner,
            timeout=self.timeout_seconds,
        )
        try:
            try:
                produced = await asyncio.wait_for(tool.run(ctx), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                raise ToolExecutionError(
                    f"'{name}' exceeded the time limit ({int(self.timeout_seconds)}s)."
                ) from None

            produced = Path(produced).resolve()
            if work_dir.resolve() not in produced.parents:
                raise ToolExecutionError(f"'{name}' produced no output.")
            if not produced.is_file() or produced.stat().st_size == 0:
                raise ToolExecutionError(f"'{name}' produced no output.")

            final = session_dir / output_file_name(inputs[0].name, tool.output_label, tool.suffix_for(options))
            os.replace(produced, final)
            return final.name
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
