"""Document skeletons and the key-to-value renderer that fills them.

Skeletons use ``{{key}}`` placeholders. Rendering is strict in both
directions: every placeholder needs a value and every value needs a
placeholder, so a typo in either surfaces as a ``TemplateError``.
"""

from __future__ import annotations

import re

import frontmatter

from persistency.errors import TemplateError

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def placeholders(skeleton: str) -> set[str]:
    return set(_PLACEHOLDER.findall(skeleton))


def render_template(skeleton: str, values: dict[str, str]) -> str:
    """Substitute ``{{key}}`` placeholders from ``values`` in a single pass."""
    expected = placeholders(skeleton)
    missing = expected - values.keys()
    if missing:
        raise TemplateError(f"No value for placeholder(s): {', '.join(sorted(missing))}")
    unused = values.keys() - expected
    if unused:
        raise TemplateError(f"No placeholder for value(s): {', '.join(sorted(unused))}")
    return _PLACEHOLDER.sub(lambda m: str(values[m.group(1)]), skeleton)


def render_document(skeleton: str, values: dict[str, str], description: str, **meta) -> str:
    """Render an ``.mdc`` document: YAML front matter followed by the body."""
    post = frontmatter.Post(render_template(skeleton, values), description=description, **meta)
    post.metadata.setdefault("alwaysApply", True)
    return frontmatter.dumps(post) + "\n"


# ── Domain foundations (conditional) ──────────────────────────

FUNCTIONAL_FOUNDATION = """\
# Functional foundation · {{projectName}}

This domain holds what the product does and why.

## Scope
- Domain concepts, entities and their identifiers
- User journeys, requirements and acceptance criteria
- Business rules, invariants and state machines (states, allowed transitions)

## Conventions
- One concept per section; link to `index.mdc` entries instead of repeating them.
- Date every change and keep a short rationale next to it.
- Deprecate instead of deleting; note what replaced the old statement.
"""

TECHNICAL_FOUNDATION = """\
# Technical foundation · {{projectName}}

This domain holds how the system is built and operated.

## Scope
- Architecture, modules and their boundaries
- Data models, schemas, migrations and lineage
- APIs, integrations and external services
- Build, deployment, environments and configuration
- Observability, security and performance constraints

## Conventions
- Reference code by repository-relative path.
- Record constraints together with where they are enforced (code, DB, infra).
- Code snapshots live under `snapshots/` and are regenerated by the tooling.
"""

AI_META_FOUNDATION = """\
# AI-meta foundation · {{projectName}}

This domain holds how the agent (`{{agent}}`) should use and maintain the layer.

## Rules
- Treat this layer as the source of truth for project context.
- Load `ai-bootstrap.mdc` first, then functional, technical and ai-meta.
- When you learn a new fact, update the matching domain in place and append a
  dated note to that domain's `index.mdc`.
- Keep the functional / technical / ai-meta division; never merge domains.
- Never delete information without a rationale.

## Hand-off documents
- `migration-brief.mdc` lists legacy sources and layout findings to reconcile.
- `legacy/` holds staged copies of previous layers; fold them into the
  canonical domains and record what was migrated.
"""

FOUNDATIONS = {
    "functional": FUNCTIONAL_FOUNDATION,
    "technical": TECHNICAL_FOUNDATION,
    "ai-meta": AI_META_FOUNDATION,
}

# ── Domain indexes (write-once) ───────────────────────────────

INDEX = """\
# {{domain}} index · {{projectName}}

Running summary maintained by the agent. The tooling creates this file once
and never rewrites it.

## Entries
- _(empty: add one dated line per fact, decision or document)_

## Changelog
- Created by the persistency tooling.
"""

# ── Layer-level documents (conditional) ───────────────────────

BOOTSTRAP = """\
# AI bootstrap · {{projectName}}

- Agent: {{agent}}
- Default model: {{defaultModel}}
- Truth branch: {{truthBranch}}
- Code snapshot: {{snapshotPath}}

## Freshness
- Days since last refresh: {{daysSinceUpdate}} (target ≤ {{sloDays}})
- Commits since truth branch: {{commitsSinceTruth}} (target ≤ {{sloCommits}})

## Session defaults
- Load this file, then `functional/`, `technical/` and `ai-meta/`.
- Prefer minimal diffs and append change notes to each domain index.
- If a migration brief exists in `ai-meta/`, work through it before new tasks.

## Layer directories
- functional/ · technical/ · ai-meta/
"""

CONFIG_ENV = """\
# AI persistency layer configuration
PROJECT_NAME={{projectName}}
PROJECT_PATH={{projectPath}}
PERSISTENCY_DIR={{layerPath}}
AI_AGENT={{agent}}
AI_CMD={{aiCmd}}
PERSISTENCY_FUNCTIONAL={{functionalDir}}
PERSISTENCY_TECHNICAL={{technicalDir}}
PERSISTENCY_AI_META={{aiMetaDir}}
AI_DEFAULT_MODEL={{defaultModel}}
"""

START_SCRIPT = """\
#!/usr/bin/env bash
set -euo pipefail

SCRIPT_DIR="$(cd "$(dirname "${BASH_SOURCE[0]}")" && pwd)"
export PROJECT_PERSISTENCY_DIR="$SCRIPT_DIR"
export PROJECT_PERSISTENCY_FUNCTIONAL="$SCRIPT_DIR/functional"
export PROJECT_PERSISTENCY_TECHNICAL="$SCRIPT_DIR/technical"
export PROJECT_PERSISTENCY_AI_META="$SCRIPT_DIR/ai-meta"
export PROJECT_PERSISTENCY_ASSETS="$SCRIPT_DIR/ai-meta/assets"

exec {{aiCmd}} "$@"
"""

# ── Run-derived documents (unconditional) ─────────────────────

UPSERT_SCRIPT = """\
#!/usr/bin/env bash
set -euo pipefail

SCRIPT_DIR="$(cd "$(dirname "${BASH_SOURCE[0]}")" && pwd)"
PROJECT_ROOT="$(cd "$SCRIPT_DIR/{{rootFromLayer}}" && pwd)"
PROMPT_FILE="$PROJECT_ROOT/{{promptPath}}"

if [[ ! -f "$PROMPT_FILE" ]]; then
  echo "Upsert prompt not found: $PROMPT_FILE" >&2
  exit 1
fi

cd "$PROJECT_ROOT"
exec {{aiCmd}} "$(cat "$PROMPT_FILE")" "$@"
"""

SNAPSHOT = """\
# Code snapshot · {{truthBranch}}

- Commit: {{commit}}

## Top-level structure
{{topLevel}}

## File extension histogram (top 30)
{{histogram}}
"""

# ── Anti-drift helpers (conditional, project root) ────────────

CHECK_STALE_SCRIPT = """\
#!/usr/bin/env bash
# Fails when the persistency layer is older than {{sloDays}} days or
# more than {{sloCommits}} commits behind its truth branch.
set -euo pipefail
exec python -m persistency check --persistency-dir "{{persistencyDir}}" \\
  --slo-days {{sloDays}} --slo-commits {{sloCommits}} "$@"
"""

REFRESH_SCRIPT = """\
#!/usr/bin/env bash
# Refreshes the persistency layer using the defaults recorded in its metadata.
set -euo pipefail
exec python -m persistency init --persistency-dir "{{persistencyDir}}" \\
  --non-interactive --yes "$@"
"""
