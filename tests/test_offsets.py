import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from imgdata import (
    BLOCK_SIZE,
    CONTENT_START,
    MAX_FIELD_VALUE,
    EntryMetadata,
    EntryName,
    OffsetComputationError,
    aligned_size,
    check_layout,
    reconcile_offsets,
)


def _layout(sizes):
    """Return contiguous entries for the given logical sizes."""

    entries = [
        EntryMetadata(EntryName.from_text(f"img{index}"), width=1, height=1)
        for index in range(len(sizes))
    ]
    return reconcile_offsets(entries, dict(enumerate(sizes)))


class ReconcileOffsetsTests(unittest.TestCase):
    def test_fresh_entries_are_laid_out_contiguously(self) -> None:
        entries = _layout([100, 600])
        self.assertEqual([entry.offset for entry in entries], [1024, 1536])
        self.assertEqual([entry.size for entry in entries], [100, 600])

    def test_growth_moves_following_entries(self) -> None:
        entries = _layout([100, 600])
        reconciled = reconcile_offsets(entries, {0: 1300})

        self.assertEqual(reconciled[0].offset, 1024)
        self.assertEqual(reconciled[0].size, 1300)
        self.assertEqual(reconciled[1].offset, 1536 + (3 - 1) * 512)
        self.assertEqual(reconciled[1].size, 600)

    def test_shift_equals_block_delta_for_later_entries_only(self) -> None:
        entries = _layout([4, 1000, 2048, 0, 8])
        reconciled = reconcile_offsets(entries, {1: 4000})  # 2 -> 8 blocks

        for before, after in zip(entries[:2], reconciled[:2]):
            self.assertEqual(before.offset, after.offset)
        for before, after in zip(entries[2:], reconciled[2:]):
            self.assertEqual(after.offset - before.offset, 6 * BLOCK_SIZE)

    def test_shrink_moves_following_entries_back(self) -> None:
        entries = _layout([2000, 40])
        reconciled = reconcile_offsets(entries, {0: 16})
        self.assertEqual([entry.offset for entry in reconciled], [1024, 1536])

    def test_change_within_block_keeps_offsets(self) -> None:
        entries = _layout([100, 600])
        reconciled = reconcile_offsets(entries, {0: 508})
        self.assertEqual([entry.offset for entry in reconciled], [1024, 1536])

    def test_result_keeps_layout_invariants(self) -> None:
        entries = _layout([4, 513, 0, 1024, 77])
        reconciled = reconcile_offsets(entries, {0: 9000, 2: 12, 4: 1})

        self.assertEqual(reconciled[0].offset, CONTENT_START)
        for current, following in zip(reconciled, reconciled[1:]):
            self.assertLessEqual(current.offset + aligned_size(current.size), following.offset)
            self.assertEqual(current.offset % BLOCK_SIZE, 0)
        check_layout(reconciled)

    def test_input_is_not_mutated(self) -> None:
        entries = _layout([100, 600])
        reconcile_offsets(entries, {0: 1300})
        self.assertEqual([entry.offset for entry in entries], [1024, 1536])
        self.assertEqual(entries[0].size, 100)

    def test_unknown_entry_is_rejected(self) -> None:
        entries = _layout([100])
        with self.assertRaises(OffsetComputationError):
            reconcile_offsets(entries, {3: 10})

    def test_overflow_is_rejected(self) -> None:
        entries = _layout([100, 100])
        with self.assertRaises(OffsetComputationError):
            reconcile_offsets(entries, {0: MAX_FIELD_VALUE})

    def test_negative_size_is_rejected(self) -> None:
        with self.assertRaises(OffsetComputationError):
            reconcile_offsets(_layout([100]), {0: -4})


class CheckLayoutTests(unittest.TestCase):
    def test_first_entry_must_start_at_content_start(self) -> None:
        entries = _layout([100])
        entries[0].offset = 1536
        with self.assertRaises(OffsetComputationError):
            check_layout(entries)

    def test_overlap_is_rejected(self) -> None:
        entries = _layout([600, 4])
        entries[1].offset = 1536
        with self.assertRaises(OffsetComputationError):
            check_layout(entries)

    def test_unaligned_offset_is_rejected(self) -> None:
        entries = _layout([4, 4])
        entries[1].offset += 4
        with self.assertRaises(OffsetComputationError):
            check_layout(entries)

    def test_gaps_are_allowed(self) -> None:
        entries = _layout([4, 4])
        entries[1].offset += BLOCK_SIZE
        check_layout(entries)


if __name__ == "__main__":
    unittest.main()
