"""Slide deck model with Markdown and Word renderers.

A deck is an ordered list of slides; its titles in order are the narrative
outline. Markdown output separates slides with `---`. The Word output puts
one slide per page.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd
from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Inches, Pt

from .tables import round_frame, to_pipe_table

FIG_W = Inches(6.0)


@dataclass
class Slide:
    title: str
    bullets: List[str] = field(default_factory=list)
    table: Optional[pd.DataFrame] = None
    figure: Optional[str] = None
    code: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class Deck:
    title: str
    subtitle: str = ""
    slides: List[Slide] = field(default_factory=list)

    def add(self, *slides: Slide) -> "Deck":
        self.slides.extend(slides)
        return self

    def outline(self) -> List[str]:
        return [s.title for s in self.slides]

    # ------------------------------------------------------------------
    # Markdown
    # ------------------------------------------------------------------

    def _slide_markdown(self, slide: Slide, base_dir: str) -> str:
        lines = [f"## {slide.title}", ""]
        for bullet in slide.bullets:
            lines.append(f"- {bullet}")
        if slide.bullets:
            lines.append("")
        if slide.code:
            lines += ["```python", slide.code.strip("\n"), "```", ""]
        if slide.table is not None:
            lines += [to_pipe_table(slide.table), ""]
        if slide.figure:
            rel = os.path.relpath(slide.figure, base_dir) if base_dir else slide.figure
            lines += [f"![{slide.title}]({rel})", ""]
        if slide.notes:
            lines += ["Note:", slide.notes, ""]
        return "\n".join(lines)

    def to_markdown(self, path: Optional[str] = None) -> str:
        base_dir = os.path.dirname(os.path.abspath(path)) if path else ""
        header = [f"# {self.title}"]
        if self.subtitle:
            header += ["", self.subtitle]
        parts = ["\n".join(header) + "\n"]
        parts += [self._slide_markdown(s, base_dir) for s in self.slides]
        text = "\n---\n\n".join(parts)
        if path:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "w") as f:
                f.write(text)
        return text

    # ------------------------------------------------------------------
    # Word
    # ------------------------------------------------------------------

    def to_docx(self, path: str) -> str:
        doc = Document()
        doc.styles["Normal"].font.size = Pt(11)

        p = doc.add_paragraph()
        run = p.add_run(self.title)
        run.bold = True
        run.font.size = Pt(20)
        p.alignment = WD_ALIGN_PARAGRAPH.CENTER
        if self.subtitle:
            doc.add_paragraph(self.subtitle).alignment = WD_ALIGN_PARAGRAPH.CENTER

        for slide in self.slides:
            doc.add_page_break()
            doc.add_heading(slide.title, level=1)
            for bullet in slide.bullets:
                doc.add_paragraph(bullet, style="List Bullet")
            if slide.code:
                code_par = doc.add_paragraph()
                code_run = code_par.add_run(slide.code.strip("\n"))
                code_run.font.name = "Courier New"
                code_run.font.size = Pt(9)
            if slide.table is not None:
                _add_table(doc, slide.table)
            if slide.figure and os.path.exists(slide.figure):
                doc.add_picture(slide.figure, width=FIG_W)
            if slide.notes:
                doc.add_paragraph(slide.notes).runs[0].italic = True

        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        doc.save(path)
        return path


def _add_table(doc, df: pd.DataFrame, digits: int = 2) -> None:
    df = round_frame(df, digits)
    table = doc.add_table(rows=1, cols=len(df.columns))
    table.style = "Table Grid"
    for cell, name in zip(table.rows[0].cells, df.columns):
        cell.text = str(name)
        cell.paragraphs[0].runs[0].bold = True
    for row in df.itertuples(index=False):
        cells = table.add_row().cells
        for cell, value in zip(cells, row):
            cell.text = "NA" if isinstance(value, float) and value != value else str(value)
