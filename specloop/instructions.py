"""
Instruction text for the next unit of work.

Pure and deterministic: the same task, change context and verify
commands always render the same bytes.
"""

from __future__ import annotations

from collections.abc import Sequence

from specloop.backend import Task

DEFAULT_SPEC_ROOT = "openspec/changes"
BLOCKED_SENTINEL = "BLOCKED:"


def build_instruction(
    task: Task,
    change_id: str | None,
    parent_id: str | None,
    verify_commands: Sequence[str],
    spec_root: str = DEFAULT_SPEC_ROOT,
    backend_bin: str = "bd",
) -> str:
    """Render the apply instruction for a single task."""
    change_context = ""
    if change_id:
        change_context = (
            f"Change: {change_id} (Epic: {parent_id})\n"
            f"Spec files: {spec_root}/{change_id}/\n"
            "\n"
        )

    change_dir = f"{spec_root}/{change_id or '<change-id>'}"
    commit_prefix = change_id or "<change>"

    prompt = f"""OpenSpec Apply (Beads) | Task: {task.id}

{change_context}Current task: {task.title}

Guardrails:
- Favor straightforward, minimal implementations; keep scope tight.
- Refer to openspec/AGENTS.md if conventions are unclear.

Steps:
1. Claim the task in Beads:
   ```bash
   {backend_bin} update {task.id} --status in_progress
   {backend_bin} sync
   ```

2. Read the OpenSpec change files for context:
   - {change_dir}/proposal.md
   - {change_dir}/tasks.md
   - {change_dir}/design.md (if exists)

3. Implement the task, keeping changes minimal and focused.

4. Update tasks.md to reflect progress:
   - Mark task as in-progress: `- [-]`
   - When done: `- [x]`

5. Complete the task in Beads:
   ```bash
   {backend_bin} close {task.id} --reason "Completed: <brief summary>"
   {backend_bin} sync
   ```

6. Commit your work:
   ```bash
   git add -A && git commit -m "{commit_prefix}: {task.id} - <brief summary>"
   ```

BLOCKED Status:
If you cannot proceed due to a spec issue, output: {BLOCKED_SENTINEL} <reason>"""

    if verify_commands:
        prompt += (
            "\n\nVerification (run after epic completion):\n"
            "```bash\n"
            f"{' && '.join(verify_commands)}\n"
            "```"
        )

    return prompt
