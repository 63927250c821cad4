"""Render the request payload handed to a worker for one work item."""

from __future__ import annotations

import json

from .constants import ERRORS_LOG_FILE, GUARDRAILS_FILE, STATE_DIR_NAME
from .models import WorkItem

# Shared files a parallel job should leave alone to avoid merge conflicts.
CONFLICT_PRONE_FILES = (
    "README.md, CHANGELOG.md, CONTRIBUTING.md",
    "package.json, package-lock.json, pnpm-lock.yaml, yarn.lock",
    "pyproject.toml, setup.py, requirements.txt, poetry.lock",
    "Cargo.toml, Cargo.lock, go.mod, go.sum",
    ".env.example, .gitignore, Makefile, Dockerfile",
)


def build_item_prompt(
    item: WorkItem,
    work_items_file: str,
    progress_file: str,
    *,
    parallel: bool = False,
) -> str:
    """Render the single-story instructions.

    Parallel jobs run on seeded copies of the state files, so they are told to
    leave those files alone and to stage only the paths they changed.
    """
    item_json = json.dumps(item.to_dict(), indent=2, ensure_ascii=False)
    if parallel:
        commit_rule = (
            "- Commit early and often, staging only the files you changed: "
            "`git add <paths> && git commit -m 'ralph: <what you did>'`\n"
            f"- Never stage `{work_items_file}` or `{progress_file}`."
        )
        record_step = (
            f"2. Do NOT edit `{work_items_file}` or `{progress_file}`; "
            "the runner updates them after merging."
        )
        done_note = ""
    else:
        commit_rule = "- Commit early and often: `git add -A && git commit -m 'ralph: <what you did>'`"
        record_step = (
            f"2. When done, append one line to `{progress_file}`: `[YYYY-MM-DD] {item.id}: <summary>`"
        )
        done_note = (
            f"\n   Do not edit `{work_items_file}` yourself; the runner marks the story complete."
        )
    return f"""# Work on a single user story

You are an autonomous development agent. Work ONLY on the user story below.

## Read state files first
1. `{work_items_file}`: every user story in the project
2. `{progress_file}`: what previous agents did
3. `{STATE_DIR_NAME}/{GUARDRAILS_FILE}`: lessons from past failures (follow them)
4. `{STATE_DIR_NAME}/{ERRORS_LOG_FILE}`: recent failures to avoid

## Repository rules
- You are already inside the git repository. Do not run `git init` or scaffold into a subdirectory.
{commit_rule}

## Your task
```json
{item_json}
```

1. Implement the acceptance criteria and make the checks pass.
{record_step}
3. Then output exactly: `<ralph>US-DONE {item.id}</ralph>`{done_note}
4. If you are stuck on the same issue 3+ times, output `<ralph>GUTTER</ralph>`.
5. If you hit a rate limit, output `<ralph>DEFER</ralph>` and stop.

If you are warned that context is running low, commit, then report US-DONE if the story is
finished. Otherwise stop: a fresh agent will resume this story from the committed state.
"""


def build_parallel_prompt(
    item: WorkItem,
    work_items_file: str,
    progress_file: str,
    *,
    job_id: str,
    agent_number: int,
    report_path: str,
) -> str:
    conflict_lines = "\n".join(f"- {line}" for line in CONFLICT_PRONE_FILES)
    return (
        build_item_prompt(item, work_items_file, progress_file, parallel=True)
        + f"""
## Parallel mode
You are agent {agent_number} (job {job_id}) in an isolated worktree.

- Write a short report to `{report_path}`: what you changed, files touched, how to test, gotchas.
- Commit all of your work. Uncommitted changes are not merged.

Do not modify these files unless the story explicitly requires it:
{conflict_lines}
"""
    )
