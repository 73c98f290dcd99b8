"""Migration brief and upsert prompt composition.

Both documents are pure functions of a ``BriefContext``: no clock, no disk
access. The caller bakes anything run-specific into the context.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from persistency.layer.analyzer import LayoutAnalysis
from persistency.layer.paths import CANONICAL_DOMAINS
from persistency.layer.templates import render_document, render_template

NONE_BULLET = "- _(none)_"
NO_NOTES_BULLET = "- _(none supplied)_"

BRIEF_TEMPLATE = """\
# Migration brief · {{projectName}}

- Project path: {{projectPath}}
- Agent: {{agent}}
- Layer: {{layerDir}}

## Layout findings
- Layer existed before this run: {{layerExisted}}
- Canonical domains present:
{{canonical}}
- Canonical domains missing (recreated by this run):
{{missing}}
- Extraneous directories referenced in the bootstrap:
{{referenced}}
- Extraneous directories not referenced anywhere (likely orphaned):
{{unreferenced}}

## Legacy sources to reconcile
{{legacySources}}

## Unresolved sources
{{unresolvedSources}}

## Supplemental notes
{{notes}}

## Expected outcome
1. Fold every legacy source into `functional/`, `technical/` or `ai-meta/`.
2. Decide for each extraneous directory whether it is migrated or retired.
3. Append a dated entry per migrated item to the matching `index.mdc`.
4. Leave legacy copies in place; the operator removes them after review.
"""

PROMPT_TEMPLATE = """\
# Persistency upsert · {{projectName}}

You are {{agent}}, maintaining the AI persistency layer of {{projectName}}.
Read the migration brief first:

- Brief: {{briefPath}}

## Canonical domains
{{canonicalPaths}}

## Extraneous directories
{{extraPaths}}

## Legacy sources
{{legacySources}}

## Instructions
1. Work through every item of the brief, in order.
2. Upsert facts into the canonical domains: update existing statements in
   place, add new ones, never drop information without a rationale.
3. Record each change as a dated line in the domain's `index.mdc`.
4. Do not modify files under the legacy directories.
5. Finish with a short summary of what was migrated and what remains open.
"""


@dataclass
class BriefContext:
    """Everything the brief and prompt are rendered from."""

    project_name: str
    project_path: str
    agent: str
    layer_dir: str
    brief_path: str
    analysis: LayoutAnalysis
    legacy_sources: list[str] = field(default_factory=list)
    unresolved_sources: list[str] = field(default_factory=list)
    intake_notes: list[str] = field(default_factory=list)


def _bullets(items: list[str], empty: str = NONE_BULLET, code: bool = False) -> str:
    if not items:
        return empty
    if code:
        return "\n".join(f"- `{item}`" for item in items)
    return "\n".join(f"- {item}" for item in items)


def _join(layer_dir: str, name: str) -> str:
    return f"{layer_dir.rstrip('/')}/{name}"


def _notes(notes: list[str]) -> list[str]:
    return [line.strip() for line in notes if line.strip()]


def compose_brief(context: BriefContext) -> tuple[str, str]:
    """Return ``(brief_text, prompt_text)`` for ``context``."""
    analysis = context.analysis
    brief_body = {
        "projectName": context.project_name,
        "projectPath": context.project_path,
        "agent": context.agent,
        "layerDir": context.layer_dir,
        "layerExisted": "yes" if analysis.exists else "no",
        "canonical": _bullets(analysis.canonical, code=True),
        "missing": _bullets(analysis.missing_canonical, code=True),
        "referenced": _bullets(analysis.referenced_extras, code=True),
        "unreferenced": _bullets(analysis.unreferenced_extras, code=True),
        "legacySources": _bullets(context.legacy_sources, code=True),
        "unresolvedSources": _bullets(context.unresolved_sources, code=True),
        "notes": _bullets(_notes(context.intake_notes), empty=NO_NOTES_BULLET),
    }
    brief = render_document(
        BRIEF_TEMPLATE,
        brief_body,
        description=f"Migration brief for the {context.project_name} persistency layer",
        alwaysApply=False,
    )

    canonical_paths = [_join(context.layer_dir, name) for name in CANONICAL_DOMAINS]
    extra_paths = [_join(context.layer_dir, name) for name in analysis.extras]
    prompt = render_template(
        PROMPT_TEMPLATE,
        {
            "projectName": context.project_name,
            "agent": context.agent,
            "briefPath": context.brief_path,
            "canonicalPaths": _bullets(canonical_paths),
            "extraPaths": _bullets(extra_paths),
            "legacySources": _bullets(context.legacy_sources),
        },
    )
    return brief, prompt
