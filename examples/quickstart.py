"""
peerwatch quickstart — detect an out-of-pattern purchase in a small friend circle.

Run:
    python examples/quickstart.py
"""

import json
import random
from datetime import datetime, timedelta

from peerwatch import (
    DetectionStack,
    ConsoleExporter,
    JsonlExporter,
)

START = datetime(2017, 6, 13, 11, 33, 0)


def event(seconds, **fields):
    ts = (START + timedelta(seconds=seconds)).strftime("%Y-%m-%d %H:%M:%S")
    return json.dumps({"timestamp": ts, **fields})


def main():
    # 1. Create the detection stack
    stack = DetectionStack.create(
        window_size=20,
        network_depth=2,
        exporters=[
            ConsoleExporter(),                               # see flags in terminal
            JsonlExporter("data/demo_flagged.json"),         # persist to disk
        ],
    )

    # 2. A small circle of friends: 1 - 2 - 3, and 4 on their own
    lines = [
        event(0, event_type="befriend", id1="1", id2="2"),
        event(1, event_type="befriend", id1="2", id2="3"),
    ]

    # 3. Everyday spending, then one outlier
    clock = 2
    for _ in range(30):
        uid = random.choice(["1", "2", "3", "4"])
        amount = round(random.uniform(20.0, 40.0), 2)
        lines.append(event(clock, event_type="purchase", id=uid, amount=f"{amount:.2f}"))
        clock += 1
    lines.append(event(clock, event_type="purchase", id="3", amount="950.00"))

    result = stack.ingest(lines, source="<quickstart>")

    # 4. Print the outcome
    groups = stack.state.groups
    print("\n" + "=" * 50)
    print("SUMMARY")
    print("=" * 50)
    print(f"  Applied:   {result.applied}")
    print(f"  Flagged:   {len(stack.anomalies())}")
    for group_id in groups.group_ids():
        stats = groups.stats_of(group_id).stats()
        members = ",".join(sorted(groups.members_of(group_id)))
        print(f"  Group #{group_id} [{members}]: n={stats['n']}, mean=${stats['mean']:.2f}")

    stack.save("data/demo_snapshot.json")


if __name__ == "__main__":
    main()
