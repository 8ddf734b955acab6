"""
Replay a list of identities through sticky routing and report how they
spread across trial keys. Useful before a rollout to check the split and,
with --base, how many identities would move when the key set changes.

    python -m trialgate.replay.sticky_report --experiment checkout \
        --keys control,variant-a --identities users.txt [--base control]
"""
import argparse
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from ..selection.sticky import select_trial

REPORT_PATH = Path("sticky_report.md")


def assign(identities: Iterable[str], experiment_name: str, trial_keys: Sequence[str]) -> Dict[str, str]:
    return {identity: select_trial(identity, experiment_name, trial_keys) for identity in identities}


def calculate_distribution(assignments: Dict[str, str], trial_keys: Sequence[str]) -> dict:
    counts = Counter(assignments.values())
    total = len(assignments)
    expected = 1 / len(trial_keys) if trial_keys else 0
    shares = {key: (counts.get(key, 0) / total if total else 0) for key in sorted(trial_keys)}
    return {
        "total": total,
        "counts": {key: counts.get(key, 0) for key in sorted(trial_keys)},
        "shares": shares,
        "max_skew": max((abs(s - expected) for s in shares.values()), default=0),
    }


def calculate_moves(before: Dict[str, str], after: Dict[str, str]) -> List[dict]:
    return [
        {"identity": identity, "from": before[identity], "to": after[identity]}
        for identity in before
        if identity in after and before[identity] != after[identity]
    ]


def write_report(path: Path, experiment_name: str, distribution: dict,
                 moves: Optional[List[dict]] = None, base_keys: Optional[Sequence[str]] = None) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write("# Sticky Routing Report\n\n")
        f.write(f"**Experiment:** {experiment_name}\n\n")
        f.write("## Distribution\n\n")
        f.write(f"- Total identities: {distribution['total']}\n")
        f.write(f"- Max skew from even split: {distribution['max_skew']:.2%}\n\n")
        f.write("| Trial | Count | Share |\n|---|---|---|\n")
        for key, count in distribution["counts"].items():
            f.write(f"| {key} | {count} | {distribution['shares'][key]:.2%} |\n")

        if moves is not None:
            f.write("\n## Reassignment\n\n")
            f.write(f"**Base keys:** {', '.join(base_keys or [])}\n\n")
            moved_pct = len(moves) / distribution["total"] if distribution["total"] else 0
            f.write(f"- Moved: {len(moves)} ({moved_pct:.2%})\n\n")
            for m in moves[:50]:
                f.write(f"- {m['identity']}: {m['from']} -> {m['to']}\n")
            if len(moves) > 50:
                f.write(f"- ... {len(moves) - 50} more\n")


def _read_identities(path: Path) -> List[str]:
    with open(path, encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def main(argv: Optional[Sequence[str]] = None) -> dict:
    parser = argparse.ArgumentParser(description="Sticky routing distribution report")
    parser.add_argument("--experiment", required=True)
    parser.add_argument("--keys", required=True, help="Comma-separated trial keys")
    parser.add_argument("--identities", required=True, help="File with one identity per line")
    parser.add_argument("--base", help="Comma-separated trial keys to compare against")
    parser.add_argument("--out", default=str(REPORT_PATH))
    args = parser.parse_args(argv)

    keys = [k.strip() for k in args.keys.split(",") if k.strip()]
    identities = _read_identities(Path(args.identities))

    assignments = assign(identities, args.experiment, keys)
    distribution = calculate_distribution(assignments, keys)

    moves = None
    base_keys = None
    if args.base:
        base_keys = [k.strip() for k in args.base.split(",") if k.strip()]
        moves = calculate_moves(assign(identities, args.experiment, base_keys), assignments)

    write_report(Path(args.out), args.experiment, distribution, moves, base_keys)
    print(f"Report saved to {args.out}")
    return distribution


if __name__ == "__main__":
    main()
