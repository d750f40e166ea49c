import unittest
import torch
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nano_oasis.embeddings import ActionEmbedder, ActionSpace
from nano_oasis.errors import InvalidActionError, ShapeMismatchError
from nano_oasis.model import DiT


class TestActionSpace(unittest.TestCase):
    """Test encoding of per-frame action records."""

    def setUp(self):
        self.space = ActionSpace()

    def test_encode_record(self):
        ids, values = self.space.encode_record({'forward': 1, 'interaction': True, 'camera': [0.5, -0.25]})
        self.assertEqual(ids, [1, 1])
        self.assertEqual(values, [0.5, -0.25])

    def test_empty_record(self):
        ids, values = self.space.encode_record({})
        self.assertEqual(ids, [0, 0])
        self.assertEqual(values, [0.0, 0.0])

    def test_conflicting_actions(self):
        with self.assertRaises(InvalidActionError):
            self.space.encode_record({'forward': 1, 'back': 1})

    def test_camera_length(self):
        with self.assertRaises(InvalidActionError):
            self.space.encode_record({'camera': [0.1]})

    def test_encode_batch(self):
        records = [
            [{'left': 1}, {'right': 1, 'camera': [1.0, 2.0]}, {}],
            [{}, {}, {'interaction': 1}],
        ]
        actions = self.space.encode(records)
        self.assertEqual(actions.discrete.shape, (2, 3, 2))
        self.assertEqual(actions.continuous.shape, (2, 3, 2))
        self.assertEqual(actions.num_frames, 3)
        self.assertEqual(actions.discrete[0, :, 0].tolist(), [3, 4, 0])
        self.assertEqual(actions.discrete[1, 2].tolist(), [0, 1])
        self.assertEqual(actions.continuous[0, 1].tolist(), [1.0, 2.0])

    def test_ragged_batch(self):
        with self.assertRaises(ShapeMismatchError):
            self.space.encode([[{}, {}], [{}]])
        with self.assertRaises(ShapeMismatchError):
            self.space.encode([])

    def test_window(self):
        actions = self.space.null_actions(2, 5)
        window = actions.window(1, 4)
        self.assertEqual(window.discrete.shape, (2, 3, 2))
        self.assertEqual(window.continuous.shape, (2, 3, 2))

    def test_dict_round_trip(self):
        space = ActionSpace.from_dict({
            'discrete_groups': {'jump': ['none', 'jump'], 'hotbar': ['none', '1', '2', '3']},
            'num_continuous': 3,
        })
        self.assertEqual(space.group_sizes, [2, 4])
        self.assertEqual(ActionSpace.from_dict(space.to_dict()).to_dict(), space.to_dict())

    def test_group_without_actions(self):
        with self.assertRaises(ValueError):
            ActionSpace(discrete_groups=[('noop', ['none'])])


class TestActionEmbedder(unittest.TestCase):
    """Test action embedding into the conditioning space."""

    def test_output_shape(self):
        space = ActionSpace()
        embedder = ActionEmbedder(space, hidden_size=64)
        out = embedder(space.null_actions(2, 3))
        self.assertEqual(out.shape, (2, 3, 64))

    def test_wrong_group_count(self):
        embedder = ActionEmbedder(ActionSpace(), hidden_size=64)
        other = ActionSpace(discrete_groups=[('jump', ['none', 'jump'])])
        with self.assertRaises(ShapeMismatchError):
            embedder(other.null_actions(1, 2))

    def test_actions_change_conditioning(self):
        torch.manual_seed(0)
        model = DiT(input_h=4, input_w=8, patch_size=2, in_channels=4,
                    hidden_size=64, depth=1, num_heads=4, max_frames=4)
        t = torch.zeros(1, 2, dtype=torch.long)
        idle = model.action_space.null_actions(1, 2)
        moving = model.action_space.encode([[{'forward': 1}, {'forward': 1, 'camera': [0.3, 0.0]}]])

        with torch.no_grad():
            c_none = model.condition(t)
            c_idle = model.condition(t, idle)
            c_moving = model.condition(t, moving)

        self.assertFalse(torch.allclose(c_idle, c_moving))
        self.assertFalse(torch.allclose(c_none, c_moving))


if __name__ == "__main__":
    unittest.main()
