"""
Event profiling helpers.

Timestamps are only available for commands submitted to a queue created
with profiling enabled, and only once the command has completed.
"""

from collections import namedtuple

EventTiming = namedtuple('EventTiming', 'queued submit start end')


def event_timing(event):
    """Read the four profiling timestamps (nanoseconds) of a completed event."""
    profile = event.profile
    return EventTiming(profile.queued, profile.submit, profile.start, profile.end)


def duration_ms(event):
    """Execution time of a completed command in milliseconds."""
    timing = event_timing(event)
    return (timing.end - timing.start) / 1e6


class ExecutionStatistics:
    """Collect named events and report their timing relative to the first one queued."""

    def __init__(self):
        self.entries = []

    def add(self, name, event):
        self.entries.append((name, event_timing(event)))

    def clear(self):
        self.entries = []

    def normalized(self):
        if not self.entries:
            return []
        base = min(timing.queued for _, timing in self.entries)
        return [(name, EventTiming(*(t - base for t in timing)))
                for name, timing in self.entries]

    def report(self):
        lines = []
        for name, timing in self.normalized():
            lines.append(f"Event {name}:")
            lines.append(f"  Queued : {timing.queued / 1e6:8.3f} ms")
            lines.append(f"  Submit : {timing.submit / 1e6:8.3f} ms")
            lines.append(f"  Start  : {timing.start / 1e6:8.3f} ms")
            lines.append(f"  End    : {timing.end / 1e6:8.3f} ms")
            lines.append(f"  Time   : {(timing.end - timing.start) / 1e6:8.3f} ms")
        return '\n'.join(lines)

    def print(self):
        print(self.report())
