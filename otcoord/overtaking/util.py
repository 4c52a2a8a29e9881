from typing import List, Sequence, Tuple, TypeVar

T = TypeVar("T")


def get_consecutive_pairs(items: Sequence[T]) -> List[Tuple[T, T]]:
    return [(items[i - 1], items[i]) for i in range(1, len(items))]


def get_all_overtaking_candidates(trains_in_order: Sequence[T]) -> List[Tuple[T, T]]:
    """Every (ahead, behind) pair of trains, the first element closer to the area's end."""
    return [
        (trains_in_order[i], trains_in_order[j])
        for i in range(len(trains_in_order))
        for j in range(i + 1, len(trains_in_order))
    ]
