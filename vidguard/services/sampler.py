from typing import Sequence, TypeVar

T = TypeVar("T")


def select_frames(frames: Sequence[T], max_count: int) -> list[T]:
    """
    Pick at most `max_count` frames for classification.

    First and last frames are always kept; the remaining slots stride evenly
    through the interior. Original order is preserved.
    """
    n = len(frames)
    if n <= max_count:
        return list(frames)
    if max_count < 2:
        return list(frames[:max_count])

    chosen = {0, n - 1}
    slots = max_count - 2
    if slots:
        step = max((n - 2) // slots, 1)
        for i in range(1, slots + 1):
            chosen.add(min(i * step, n - 2))

    # index collisions leave gaps; top up from the unused interior in order
    interior = (i for i in range(1, n - 1) if i not in chosen)
    while len(chosen) < max_count:
        chosen.add(next(interior))

    return [frames[i] for i in sorted(chosen)]
