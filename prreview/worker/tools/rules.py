import re
from typing import List, Dict, Any, Tuple

from prreview.common.schemas import ChangedFile

RULE_IDS = ("secret", "debug-print", "lockfile-changed", "workflow-edit")

SECRET = re.compile(r'(?i)(api[_-]?key|aws[_-](secret|access)|password|private[_-]?key)\s*[:=]')
DEBUG_PRINT = re.compile(r'(\bprint\(|console\.log\(|\bdebugger\b|\bpdb\.set_trace\()')
LOCKFILES = ("lock", "lock.json", "lock.yaml", "lock.yml", "go.sum")


def analyze(files: List[ChangedFile]) -> List[Dict[str, Any]]:
    """Run the deterministic diff checks over the added lines of each file.

    Line numbers are positions in the new file, taken from the hunk headers.
    """
    findings = []

    for f in files:
        path = f.filename
        new_line = 0

        for line in f.patch.splitlines():
            if line.startswith("@@"):
                m = re.search(r"\+(\d+)", line)
                new_line = int(m.group(1)) - 1 if m else 0
                continue
            if line.startswith("-"):
                continue
            new_line += 1
            if not line.startswith("+"):
                continue

            txt = line[1:]
            if SECRET.search(txt):
                findings.append({
                    "rule_id": "secret",
                    "severity": "high",
                    "reason": "Possible secret in added code",
                    "path": path,
                    "line": new_line
                })
            elif DEBUG_PRINT.search(txt):
                findings.append({
                    "rule_id": "debug-print",
                    "severity": "low",
                    "reason": "Debug print/log added",
                    "path": path,
                    "line": new_line
                })

        if path.endswith(LOCKFILES) and f.status != "removed":
            findings.append({
                "rule_id": "lockfile-changed",
                "severity": "medium",
                "reason": "Lockfile updated; ensure reproducible builds",
                "path": path,
                "line": None
            })

        if path.startswith(".github/workflows/"):
            findings.append({
                "rule_id": "workflow-edit",
                "severity": "medium",
                "reason": "CI workflow changed; ensure safety",
                "path": path,
                "line": None
            })

    return findings


def partition(findings: List[Dict[str, Any]]) -> Tuple[List[str], List[str]]:
    """Split the rule ids into (violated, passed) for the review record."""
    violated = sorted({f["rule_id"] for f in findings})
    passed = [r for r in RULE_IDS if r not in violated]
    return violated, passed
