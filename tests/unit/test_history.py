"""
Unit tests for the chain history tracker and its bounded segment.
"""

import pytest

from chainstream.streaming.history import ChainHistoryTracker, ChainSegment
from chainstream.streaming.types import Extended, Reorged, Unrecoverable
from tests.fixtures.fake_transport import make_block, make_chain


def seeded_tracker(blocks, tracked_depth=3):
    tracker = ChainHistoryTracker(tracked_depth=tracked_depth)
    for block in blocks:
        tracker.observe(block)
    return tracker


@pytest.mark.unit
class TestChainSegment:
    """Test the fixed-capacity block segment"""

    def test_append_and_evict(self):
        segment = ChainSegment(capacity=3)
        blocks = make_chain(10, 4)
        for block in blocks:
            segment.append(block)

        assert len(segment) == 3
        assert [b.number for b in segment] == [11, 12, 13]
        assert segment.floor == blocks[1]
        assert segment.tip == blocks[3]
        assert segment.floor_parent_hash == blocks[0].hash
        assert not segment.contains(blocks[0].hash)

    def test_floor_parent_hash_set_on_first_append(self):
        segment = ChainSegment(capacity=3)
        block = make_chain(10, 1)[0]
        segment.append(block)

        assert segment.floor_parent_hash == block.parent_hash

    def test_append_rejects_unlinked_block(self):
        segment = ChainSegment(capacity=3)
        segment.append(make_chain(10, 1)[0])

        with pytest.raises(ValueError, match='does not extend tip'):
            segment.append(make_chain(11, 1, fork='x')[0])

    def test_get_by_number_and_position(self):
        segment = ChainSegment(capacity=5)
        blocks = make_chain(10, 3)
        for block in blocks:
            segment.append(block)

        assert segment.get_by_number(11) == blocks[1]
        assert segment.get_by_number(9) is None
        assert segment.get_by_number(13) is None
        assert segment.position_of(blocks[2].hash) == 2
        assert segment.position_of('0x' + 'ff' * 32) is None

    def test_truncate_after_returns_newest_first(self):
        segment = ChainSegment(capacity=5)
        blocks = make_chain(10, 4)
        for block in blocks:
            segment.append(block)

        removed = segment.truncate_after(2)

        assert removed == [blocks[3], blocks[2]]
        assert segment.tip == blocks[1]
        assert not segment.contains(blocks[3].hash)

    def test_evicted_flag(self):
        segment = ChainSegment(capacity=2)
        blocks = make_chain(10, 3)
        segment.append(blocks[0])
        segment.append(blocks[1])

        assert segment.evicted is False

        segment.append(blocks[2])
        assert segment.evicted is True

        segment.clear()
        assert segment.evicted is False

    def test_invalid_capacity(self):
        with pytest.raises(ValueError, match='capacity must be >= 1'):
            ChainSegment(capacity=0)


@pytest.mark.unit
class TestChainHistoryTracker:
    """Test block classification against tracked history"""

    def test_first_block_seeds_segment(self):
        tracker = ChainHistoryTracker(tracked_depth=3)
        block = make_chain(10, 1)[0]

        outcome = tracker.observe(block)

        assert outcome == Extended(block)
        assert tracker.tip == block

    def test_linear_extension_evicts_oldest(self):
        """[10, 11, 12] + 13 -> Extended, segment [11, 12, 13]"""
        blocks = make_chain(10, 4)
        tracker = seeded_tracker(blocks[:3])

        outcome = tracker.observe(blocks[3])

        assert isinstance(outcome, Extended)
        assert outcome.applied_block == blocks[3]
        assert not outcome.duplicate
        assert [b.number for b in tracker.blocks()] == [11, 12, 13]

    def test_unbroken_chain_is_always_extended(self):
        blocks = make_chain(0, 50)
        tracker = ChainHistoryTracker(tracked_depth=8)

        outcomes = [tracker.observe(block) for block in blocks]

        assert all(isinstance(o, Extended) and not o.duplicate for o in outcomes)
        assert tracker.tip == blocks[-1]
        assert tracker.blocks() == blocks[-8:]

    def test_duplicate_tip_is_noop(self):
        blocks = make_chain(10, 3)
        tracker = seeded_tracker(blocks)

        outcome = tracker.observe(blocks[2])

        assert outcome == Extended(blocks[2], duplicate=True)
        assert outcome.applied_blocks == ()
        assert tracker.blocks() == blocks

    def test_older_tracked_block_is_noop(self):
        """A lagging node returning an older canonical block changes nothing"""
        blocks = make_chain(10, 3)
        tracker = seeded_tracker(blocks)

        outcome = tracker.observe(blocks[0])

        assert isinstance(outcome, Extended)
        assert outcome.duplicate
        assert tracker.tip == blocks[2]

    def test_competing_tip_reorg_depth_one(self):
        """[10, 11, 12] + 12' (parent 11) -> Reorged([12], [12'], 1)"""
        blocks = make_chain(10, 3)
        tracker = seeded_tracker(blocks)
        competing = make_block(12, blocks[1].hash, fork='b')

        outcome = tracker.observe(competing)

        assert outcome == Reorged(reverted_blocks=(blocks[2],), applied_blocks=(competing,), depth=1)
        assert outcome.common_ancestor_number == 11
        assert tracker.blocks() == [blocks[0], blocks[1], competing]

    def test_reorg_with_ancestry(self):
        blocks = make_chain(10, 5)
        tracker = seeded_tracker(blocks, tracked_depth=5)
        branch = make_chain(12, 4, fork='b', parent_hash=blocks[1].hash)

        outcome = tracker.observe(branch[-1], ancestry=branch[:-1])

        assert isinstance(outcome, Reorged)
        assert outcome.depth == 3
        assert outcome.reverted_blocks == (blocks[4], blocks[3], blocks[2])
        assert outcome.applied_blocks == tuple(branch)
        remaining = {b.hash for b in tracker.blocks()}
        assert not remaining & {b.hash for b in blocks[2:]}
        assert tracker.tip == branch[-1]

    @pytest.mark.parametrize('depth', [1, 2, 3, 4, 5])
    def test_reorg_within_window_reverts_exactly_depth_blocks(self, depth):
        blocks = make_chain(20, 5)
        tracker = seeded_tracker(blocks, tracked_depth=5)
        ancestor = blocks[-depth - 1] if depth < 5 else None
        parent_hash = ancestor.hash if ancestor else blocks[0].parent_hash
        branch = make_chain(blocks[-depth].number, depth + 1, fork='b', parent_hash=parent_hash)

        outcome = tracker.observe(branch[-1], ancestry=branch[:-1])

        assert isinstance(outcome, Reorged)
        assert outcome.depth == depth
        assert len(outcome.reverted_blocks) == depth
        assert outcome.applied_blocks == tuple(branch)
        assert tracker.tip == branch[-1]

    def test_reorg_replacing_whole_window_uses_floor_parent(self):
        blocks = make_chain(10, 6)
        tracker = seeded_tracker(blocks, tracked_depth=3)  # tracks 13, 14, 15
        branch = make_chain(13, 3, fork='b', parent_hash=blocks[2].hash)

        outcome = tracker.observe(branch[-1], ancestry=branch[:-1])

        assert isinstance(outcome, Reorged)
        assert outcome.depth == 3
        assert tracker.blocks() == branch

    def test_reorg_deeper_than_window_is_unrecoverable(self):
        blocks = make_chain(10, 6)
        tracker = seeded_tracker(blocks, tracked_depth=3)  # tracks 13, 14, 15
        before = tracker.blocks()
        branch = make_chain(12, 5, fork='b', parent_hash=blocks[1].hash)
        # The walk back stops at the floor height, so the branch starts at 13
        outcome = tracker.observe(branch[-1], ancestry=branch[1:-1])

        assert isinstance(outcome, Unrecoverable)
        assert outcome.observed_depth == 4
        assert outcome.tracked_depth == 3
        assert tracker.blocks() == before

    @pytest.mark.parametrize('tracked_depth', [2, 64])
    def test_reorg_right_after_first_block_reseeds(self, tracked_depth):
        """[104] + 104' forking below 104 -> Reorged([104], [104'], 1), not Unrecoverable"""
        tracker = ChainHistoryTracker(tracked_depth=tracked_depth)
        first = make_chain(104, 1)[0]
        tracker.observe(first)
        branch = make_chain(103, 2, fork='b')

        outcome = tracker.observe(branch[1])

        assert outcome == Reorged(reverted_blocks=(first,), applied_blocks=(branch[1],), depth=1)
        assert tracker.blocks() == [branch[1]]
        assert tracker.links_to_history(make_chain(105, 1, fork='b', parent_hash=branch[1].hash)[0])

    def test_fork_below_partly_filled_segment_replaces_every_block(self):
        blocks = make_chain(10, 3)
        tracker = seeded_tracker(blocks, tracked_depth=5)
        branch = make_chain(9, 4, fork='b')
        # The walk back stops at the floor height, so the branch starts at 10
        outcome = tracker.observe(branch[-1], ancestry=branch[1:-1])

        assert isinstance(outcome, Reorged)
        assert outcome.depth == 3
        assert outcome.reverted_blocks == (blocks[2], blocks[1], blocks[0])
        assert outcome.applied_blocks == tuple(branch[1:])
        assert tracker.blocks() == branch[1:]

    def test_fork_below_floor_after_eviction_stays_unrecoverable(self):
        blocks = make_chain(10, 4)
        tracker = seeded_tracker(blocks, tracked_depth=3)  # tracks 11, 12, 13
        branch = make_chain(10, 4, fork='b')

        outcome = tracker.observe(branch[-1], ancestry=branch[1:-1])

        assert isinstance(outcome, Unrecoverable)
        assert outcome.observed_depth == 4
        assert tracker.blocks() == blocks[1:]

    def test_candidate_below_floor_is_unrecoverable(self):
        blocks = make_chain(10, 6)
        tracker = seeded_tracker(blocks, tracked_depth=3)
        stale = make_block(11, blocks[0].hash, fork='b')

        outcome = tracker.observe(stale)

        assert outcome == Unrecoverable(observed_depth=5, tracked_depth=3)
        assert tracker.tip == blocks[-1]

    def test_multi_block_extension_through_ancestry(self):
        blocks = make_chain(10, 5)
        tracker = seeded_tracker(blocks[:3], tracked_depth=5)

        outcome = tracker.observe(blocks[4], ancestry=[blocks[3]])

        assert isinstance(outcome, Extended)
        assert outcome.applied_blocks == (blocks[3], blocks[4])
        assert tracker.tip == blocks[4]

    def test_ancestry_overlapping_tracked_blocks(self):
        blocks = make_chain(10, 4)
        tracker = seeded_tracker(blocks, tracked_depth=4)
        branch = make_chain(13, 2, fork='b', parent_hash=blocks[2].hash)

        outcome = tracker.observe(branch[-1], ancestry=[blocks[1], blocks[2], branch[0]])

        assert isinstance(outcome, Reorged)
        assert outcome.reverted_blocks == (blocks[3],)
        assert outcome.applied_blocks == tuple(branch)

    def test_unlinked_ancestry_raises(self):
        blocks = make_chain(10, 3)
        tracker = seeded_tracker(blocks)
        branch = make_chain(12, 2, fork='b', parent_hash=blocks[1].hash)
        unrelated = make_block(12, blocks[1].hash, fork='c')

        with pytest.raises(ValueError, match='not parent-linked'):
            tracker.observe(branch[1], ancestry=[unrelated])

    def test_branch_with_gap_above_tip_raises(self):
        blocks = make_chain(10, 5)
        tracker = seeded_tracker(blocks[:3])

        with pytest.raises(ValueError, match='gap'):
            tracker.observe(blocks[4])

    def test_reset_with_seed(self):
        blocks = make_chain(10, 3)
        tracker = seeded_tracker(blocks)
        seed = make_chain(500, 1)[0]

        tracker.reset(seed)

        assert tracker.blocks() == [seed]
        assert tracker.links_to_history(make_chain(501, 1, parent_hash=seed.hash)[0])

    def test_links_to_history(self):
        blocks = make_chain(10, 5)
        tracker = seeded_tracker(blocks, tracked_depth=3)  # tracks 12, 13, 14

        assert tracker.links_to_history(make_block(14, blocks[3].hash, fork='b'))
        assert tracker.links_to_history(make_block(12, blocks[1].hash, fork='b'))
        assert not tracker.links_to_history(make_block(12, make_block(11, 'ab' * 32, 'z').hash, fork='b'))

    def test_invalid_tracked_depth(self):
        with pytest.raises(ValueError, match='tracked_depth must be >= 1'):
            ChainHistoryTracker(tracked_depth=0)
