"""
Tests for dependency resolution into execution waves.
"""

from agent_task_engine.resolver import DependencyResolver

from conftest import make_task


def ids(waves):
    return [[task.id for task in wave] for wave in waves]


class TestDependencyResolver:
    """Test cases for DependencyResolver."""

    def setup_method(self):
        self.resolver = DependencyResolver()

    def test_independent_tasks_share_one_wave(self):
        tasks = [make_task("a"), make_task("b"), make_task("c")]

        resolution = self.resolver.resolve(tasks)

        assert ids(resolution.waves) == [["a", "b", "c"]]
        assert resolution.is_complete

    def test_chain_produces_one_wave_per_task(self):
        tasks = [make_task("a"), make_task("b", "a"), make_task("c", "b")]
        assert ids(self.resolver.group(tasks)) == [["a"], ["b"], ["c"]]

    def test_diamond_like_fan_out(self):
        tasks = [
            make_task("root"),
            make_task("left", "root"),
            make_task("right", "root"),
            make_task("leaf", "left"),
        ]
        assert ids(self.resolver.group(tasks)) == [["root"], ["left", "right"], ["leaf"]]

    def test_order_within_wave_follows_input(self):
        tasks = [make_task("z", "a"), make_task("a"), make_task("m", "a"), make_task("b")]
        assert ids(self.resolver.group(tasks)) == [["a", "b"], ["z", "m"]]

    def test_predecessor_must_finish_in_earlier_wave(self):
        # "b" appears before its predecessor and must still wait a wave.
        tasks = [make_task("b", "a"), make_task("a")]
        assert ids(self.resolver.group(tasks)) == [["a"], ["b"]]

    def test_dangling_predecessor_counts_as_satisfied(self):
        tasks = [make_task("a", "does_not_exist"), make_task("b", "a")]
        assert ids(self.resolver.group(tasks)) == [["a"], ["b"]]

    def test_cycle_is_reported_as_unresolved(self):
        tasks = [
            make_task("free"),
            make_task("x", "y"),
            make_task("y", "x"),
            make_task("after", "x"),
        ]

        resolution = self.resolver.resolve(tasks)

        assert ids(resolution.waves) == [["free"]]
        assert [t.id for t in resolution.unresolved] == ["x", "y", "after"]
        assert not resolution.is_complete

    def test_group_drops_cyclic_tasks(self):
        tasks = [make_task("x", "x2"), make_task("x2", "x")]
        assert self.resolver.group(tasks) == []

    def test_empty_input(self):
        resolution = self.resolver.resolve([])
        assert resolution.waves == []
        assert resolution.is_complete

    def test_every_task_placed_once(self):
        tasks = [make_task(f"t{i}", f"t{i - 1}" if i % 2 else "") for i in range(10)]

        resolution = self.resolver.resolve(tasks)

        placed = [task.id for task in resolution.ordered]
        assert sorted(placed) == sorted(task.id for task in tasks)
        assert len(placed) == len(set(placed))

    def test_resolver_does_not_touch_tasks(self):
        tasks = [make_task("a"), make_task("b", "a")]
        before = [task.to_dict() for task in tasks]

        self.resolver.resolve(tasks)

        assert [task.to_dict() for task in tasks] == before
