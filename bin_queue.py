"""
Bucketed priority queue over a bounded score domain.

Scores are assumed to lie in [0, 1). Each score is discretized into one of
N bins, which gives O(1) amortized push/pop at the price of exact ordering
inside a bin: elements sharing a bin come out in insertion (FIFO) order.

Usage:
    queue = BinQueue(num_bins=256)
    queue.push('edge-7', 0.31)
    queue.push('edge-2', 0.05)
    queue.pop()  # 'edge-2'
"""

from collections import deque

DEFAULT_NUM_BINS = 256


class BinQueueOutOfBoundsError(IndexError):
    """Raised when a score lies outside the queue's [0, 1) domain."""

    def __init__(self, score):
        super().__init__(f"Score {score} not in [0, 1)")
        self.score = score


class BinQueue:
    """
    Min-priority queue sorting elements from smallest to largest score.

    Attributes:
        num_bins (int): Number of discrete bins N
        bins (list): One FIFO deque per bin
        min_bin (int): Smallest non-empty bin, or -1 if the queue is empty
    """

    def __init__(self, num_bins=DEFAULT_NUM_BINS):
        if num_bins < 1:
            raise ValueError(f"Expected at least one bin, got {num_bins}")

        self.num_bins = num_bins
        self.bins = [deque() for _ in range(num_bins)]
        self.min_bin = -1

    def push(self, element, score):
        """
        Insert an element with the given score.

        Args:
            element: Any object to enqueue
            score (float): Priority in [0, 1)

        Raises:
            BinQueueOutOfBoundsError: If the score maps outside [0, N)

        Time complexity: O(1)
        """
        i = self.score_to_index(score)

        self.bins[i].append(element)
        if self.min_bin == -1:
            self.min_bin = i
        else:
            self.min_bin = min(i, self.min_bin)

    def top(self):
        """Return the front element of the smallest non-empty bin."""
        if self.empty():
            raise IndexError("top from an empty BinQueue")
        return self.bins[self.min_bin][0]

    def pop(self):
        """
        Remove and return the front element of the smallest non-empty bin.

        If that bin runs empty, scan upwards for the next non-empty one.

        Time complexity: O(1) amortized, O(N) worst case for the scan
        """
        if self.empty():
            raise IndexError("pop from an empty BinQueue")

        element = self.bins[self.min_bin].popleft()

        if not self.bins[self.min_bin]:
            # find next non-empty bin
            for i in range(self.min_bin, self.num_bins):
                if self.bins[i]:
                    self.min_bin = i
                    return element

            self.min_bin = -1

        return element

    def empty(self):
        return self.min_bin == -1

    def size(self):
        """Number of queued elements. O(N), fine for a small fixed N."""
        if self.empty():
            return 0
        return sum(len(self.bins[i]) for i in range(self.min_bin, self.num_bins))

    def __len__(self):
        return self.size()

    def __bool__(self):
        return not self.empty()

    def score_to_index(self, score):
        return score_to_index(score, self.num_bins)


def score_to_index(score, num_bins):
    """
    Discretize a score in [0, 1) onto one of num_bins bins.

    Raises:
        BinQueueOutOfBoundsError: If the score is outside [0, 1)
    """
    # int() truncates towards zero and maps 1.0 onto the last bin, so the
    # domain is checked on the score itself
    if not 0 <= score < 1:
        raise BinQueueOutOfBoundsError(score)

    return int(score * (num_bins - 1))
