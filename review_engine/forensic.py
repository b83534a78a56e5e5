"""
Forensic Reporter CLI
=====================

Inspects persisted assessments directly on disk, bypassing the engine
and the API.

COMMANDS:
- verify:   Check the change log hash chain and every version checksum
- log:      Dump the linear change log
- versions: Render the version DAG

USAGE:
    python -m review_engine.forensic --storage-dir ./data/assessments verify
    python -m review_engine.forensic log <assessment_id>
"""
import argparse
import sys
from typing import Dict, List, Optional, Sequence

from .contracts.errors import ChainIntegrityError
from .contracts.records import AssessmentVersion
from .contracts.serialization import compute_checksum
from .storage import FileStorageBackend
from .temporal.change_log import ChangeLog


def _targets(backend: FileStorageBackend, assessment_id: Optional[str]) -> List[str]:
    return [assessment_id] if assessment_id else backend.list_assessments()


def verify_assessment(backend: FileStorageBackend, assessment_id: str) -> int:
    """Returns the number of integrity failures found."""
    print(f"[*] Verifying assessment {assessment_id}")
    errors = 0

    log = ChangeLog(assessment_id)
    changes = backend.load_changes(assessment_id)
    for change in changes:
        try:
            log.load_verified_entry(change)
        except ChainIntegrityError as e:
            print(f"[FAIL] {e.message}")
            errors += 1
            break  # everything after a broken link is unverifiable
    if errors == 0:
        print(f"    Chain: {len(changes)} entries intact, head {log.state.head_hash[:12]}")

    versions = backend.load_versions(assessment_id)
    for version in versions:
        actual = compute_checksum(version.content, version.metadata)
        if actual != version.checksum:
            print(f"[FAIL] Version {version.version_id} checksum mismatch")
            errors += 1
    print(f"    Versions: {len(versions)} checked")
    return errors


def cmd_verify(backend: FileStorageBackend, args) -> int:
    errors = 0
    targets = _targets(backend, args.assessment_id)
    if not targets:
        print("[!] No assessments found (empty storage?).")
        return 0
    for assessment_id in targets:
        errors += verify_assessment(backend, assessment_id)
    if errors == 0:
        print(f"[PASS] {len(targets)} assessment(s) verified. Integrity intact.")
        return 0
    print(f"[FAIL] Found {errors} errors.")
    return 1


def cmd_log(backend: FileStorageBackend, args) -> int:
    print("SEQ  | TIME                | FIELD                | ACTOR        | TARGET          | HASH")
    print("-" * 96)
    for change in backend.load_changes(args.assessment_id):
        target = (
            change.target.question_id or change.target.stage_id
            or change.target.version_id or change.target.role_id or "-"
        )
        print(
            f"{change.sequence:<4} | {change.timestamp.to_iso()[:19]} | {change.field.value:<20} | "
            f"{change.actor[:12]:<12} | {target[:15]:<15} | {change.entry_hash[:8]}..."
        )
    return 0


def render_ascii_dag(versions: Sequence[AssessmentVersion]) -> List[str]:
    """ASCII tree of versions by parent; merge sources are listed inline."""
    by_id: Dict[str, AssessmentVersion] = {v.version_id: v for v in versions}
    children: Dict[str, List[str]] = {}
    roots = []
    for version in versions:
        if version.parent_id is None:
            roots.append(version.version_id)
        else:
            children.setdefault(version.parent_id, []).append(version.version_id)

    lines: List[str] = []

    def walk(vid: str, prefix: str, is_last: bool) -> None:
        version = by_id[vid]
        tags = [version.approval_status.value]
        if version.branch_name:
            tags.append(f"branch={version.branch_name}")
        if len(version.merged_from) > 1:
            tags.append("merge<-" + ",".join(s[:8] for s in version.merged_from[1:]))
        connector = "`-- " if is_last else "|-- "
        lines.append(f"{prefix}{connector}v{version.version_number} {vid[:8]} [{' '.join(tags)}]")
        kids = children.get(vid, [])
        for i, kid in enumerate(kids):
            walk(kid, prefix + ("    " if is_last else "|   "), i == len(kids) - 1)

    for root in roots:
        walk(root, "", True)
    return lines


def cmd_versions(backend: FileStorageBackend, args) -> int:
    versions = backend.load_versions(args.assessment_id)
    print(f"[*] Loaded {len(versions)} versions.")
    if not versions:
        return 0
    print("\nVERSION DAG")
    print("===========")
    for line in render_ascii_dag(versions):
        print(line)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Forensic Reporter")
    parser.add_argument("--storage-dir", default="./data/assessments", help="Path to storage directory")

    subparsers = parser.add_subparsers(dest="command")
    verify_parser = subparsers.add_parser("verify", help="Verify integrity")
    verify_parser.add_argument("assessment_id", nargs="?", help="Single assessment (default: all)")
    log_parser = subparsers.add_parser("log", help="Dump change log")
    log_parser.add_argument("assessment_id")
    versions_parser = subparsers.add_parser("versions", help="Show version DAG")
    versions_parser.add_argument("assessment_id")

    args = parser.parse_args(argv)
    commands = {"verify": cmd_verify, "log": cmd_log, "versions": cmd_versions}
    if args.command not in commands:
        parser.print_help()
        return 2
    return commands[args.command](FileStorageBackend(args.storage_dir), args)


if __name__ == "__main__":
    sys.exit(main())
