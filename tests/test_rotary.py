import unittest
import torch
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nano_oasis.errors import ShapeMismatchError
from nano_oasis.rotary import RotaryCache, RotaryEmbedding, apply_rotary_emb, rotate_half


class TestRotateHalf(unittest.TestCase):

    def test_pairs(self):
        x = torch.tensor([1., 2., 3., 4.])
        self.assertTrue(torch.equal(rotate_half(x), torch.tensor([-2., 1., -4., 3.])))


class TestRotaryEmbedding(unittest.TestCase):
    """Test rotary frequency tables and their application."""

    def test_lang_frequencies(self):
        rotary = RotaryEmbedding(8)
        expected = 1.0 / (10000 ** (torch.arange(0, 8, 2).float() / 8))
        self.assertTrue(torch.allclose(rotary.freqs, expected))
        self.assertEqual(rotary.rot_dim, 8)

    def test_interleaved_table(self):
        rotary = RotaryEmbedding(8)
        table = rotary.seq_freqs(3)
        self.assertEqual(table.shape, (3, 8))
        self.assertTrue(torch.equal(table[:, 0], table[:, 1]))
        self.assertTrue(torch.equal(table[0], torch.zeros(8)))

    def test_relative_position(self):
        """q.k after rotation depends only on the position difference."""
        rotary = RotaryEmbedding(16)
        q = torch.randn(1, 1, 1, 16)
        k = torch.randn(1, 1, 1, 16)

        def score(m, n):
            q_rot = rotary.rotate_queries_or_keys(q, offset=m)
            k_rot = rotary.rotate_queries_or_keys(k, offset=n)
            return (q_rot * k_rot).sum()

        self.assertTrue(torch.allclose(score(2, 5), score(9, 12), atol=1e-4))
        self.assertTrue(torch.allclose(score(0, 0), (q * k).sum(), atol=1e-5))

    def test_rotation_preserves_norm(self):
        rotary = RotaryEmbedding(16)
        t = torch.randn(2, 4, 6, 16)
        rotated = rotary.rotate_queries_or_keys(t)
        self.assertTrue(torch.allclose(rotated.norm(dim=-1), t.norm(dim=-1), atol=1e-5))

    def test_odd_dimension_passthrough(self):
        """Channels past the rotation width are left unchanged."""
        rotary = RotaryEmbedding(4)
        t = torch.randn(1, 3, 5)
        out = apply_rotary_emb(rotary.seq_freqs(3), t)
        self.assertTrue(torch.equal(out[..., 4], t[..., 4]))
        self.assertFalse(torch.allclose(out[..., :4], t[..., :4]))

    def test_rotation_too_wide(self):
        rotary = RotaryEmbedding(8)
        with self.assertRaises(ShapeMismatchError):
            apply_rotary_emb(rotary.seq_freqs(3), torch.randn(1, 3, 6))

    def test_negative_offset(self):
        rotary = RotaryEmbedding(8)
        with self.assertRaises(ValueError):
            rotary.seq_freqs(3, offset=-1)

    def test_axial_freqs_shape(self):
        rotary = RotaryEmbedding(8, freqs_for='pixel', max_freq=256)
        freqs = rotary.get_axial_freqs(9, 16)
        self.assertEqual(freqs.shape, (9, 16, 16))

    def test_pixel_positions_span_unit_interval(self):
        rotary = RotaryEmbedding(4, freqs_for='pixel', max_freq=10)
        freqs = rotary.get_axial_freqs(5, 3)
        # Row axis occupies the first rot_dim channels; position -1 at row 0
        self.assertTrue(torch.allclose(freqs[0, 0, :4], -rotary.freqs.repeat_interleave(2)))
        self.assertTrue(torch.allclose(freqs[4, 0, :4], rotary.freqs.repeat_interleave(2)))

    def test_unknown_freqs_for(self):
        with self.assertRaises(ValueError):
            RotaryEmbedding(8, freqs_for='audio')


class TestRotaryCache(unittest.TestCase):
    """Test caching of temporal and axial frequency tables."""

    def test_cache_hit_matches_fresh_table(self):
        rotary = RotaryEmbedding(8)
        rotary.seq_freqs(10)
        self.assertEqual(rotary.cache.cached_len, 10)

        cached = rotary.seq_freqs(4, offset=3)
        fresh = rotary(rotary.get_seq_pos(4, offset=3))
        self.assertTrue(torch.allclose(cached, fresh))
        self.assertEqual(rotary.cache.cached_len, 10)

    def test_longer_request_recaches(self):
        rotary = RotaryEmbedding(8)
        rotary.seq_freqs(4)
        rotary.seq_freqs(6, offset=2)
        self.assertEqual(rotary.cache.cached_len, 8)

    def test_capacity(self):
        rotary = RotaryEmbedding(8, cache_max_seq_len=5)
        table = rotary.seq_freqs(6)
        self.assertEqual(table.shape, (6, 8))
        self.assertEqual(rotary.cache.cached_len, 0)

    def test_axial_table_hit_and_miss(self):
        rotary = RotaryEmbedding(8, freqs_for='pixel', max_freq=256)
        first = rotary.get_axial_freqs(9, 16)
        self.assertEqual(rotary.axial_cache.cached_key, (9, 16))
        self.assertIs(rotary.get_axial_freqs(9, 16), first)

        other = rotary.get_axial_freqs(4, 8)
        self.assertEqual(other.shape, (4, 8, 16))
        self.assertEqual(rotary.axial_cache.cached_key, (4, 8))
        again = rotary.get_axial_freqs(9, 16)
        self.assertIsNot(again, first)
        self.assertTrue(torch.equal(again, first))

    def test_axial_table_invalidated(self):
        rotary = RotaryEmbedding(8, freqs_for='pixel')
        rotary.get_axial_freqs(3, 5)
        rotary.to(torch.float64)
        self.assertIsNone(rotary.axial_cache.cached_key)
        self.assertEqual(rotary.get_axial_freqs(3, 5).dtype, torch.float64)

        rotary.axial_cache.resize(16)
        self.assertEqual(rotary.axial_cache.cached_len, 0)

    def test_axial_cache_disabled(self):
        rotary = RotaryEmbedding(8, freqs_for='pixel', cache_if_possible=False)
        rotary.get_axial_freqs(3, 5)
        self.assertIsNone(rotary.axial_cache.cached_key)

    def test_invalidated_on_conversion(self):
        rotary = RotaryEmbedding(8)
        rotary.seq_freqs(4)
        rotary.to(torch.float64)
        self.assertEqual(rotary.cache.cached_len, 0)
        self.assertEqual(rotary.seq_freqs(4).dtype, torch.float64)

    def test_resize(self):
        cache = RotaryCache(capacity=4)
        self.assertTrue(cache.store(torch.zeros(4, 2)))
        self.assertFalse(cache.store(torch.zeros(5, 2)))
        cache.resize(8)
        self.assertEqual(cache.cached_len, 0)
        self.assertTrue(cache.store(torch.zeros(5, 2)))
        with self.assertRaises(ValueError):
            cache.resize(0)


if __name__ == "__main__":
    unittest.main()
