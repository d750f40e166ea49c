import unittest
import torch
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nano_oasis.diffusion import NoiseSchedule, diffusion_loss, sigmoid_beta_schedule
from nano_oasis.errors import InvalidScheduleError
from nano_oasis.model import DiT


class TestSigmoidSchedule(unittest.TestCase):
    """Test the sigmoid beta schedule."""

    def test_betas_bounds(self):
        for T in (1, 2, 7, 10, 1000):
            with self.subTest(T=T):
                betas = sigmoid_beta_schedule(T)
                self.assertEqual(betas.shape, (T,))
                self.assertTrue(torch.all(betas >= 0))
                self.assertTrue(torch.all(betas <= 0.999))

    def test_alphas_cumprod(self):
        for T in (1, 2, 7, 10, 1000):
            with self.subTest(T=T):
                alphas = NoiseSchedule(T).alphas_cumprod
                self.assertEqual(alphas.shape, (T + 1,))
                self.assertEqual(alphas[0].item(), 1.0)
                self.assertTrue(torch.all(alphas[1:] <= alphas[:-1]))
                self.assertTrue(torch.all(alphas > 0))

    def test_long_schedule_ends_near_pure_noise(self):
        self.assertLess(NoiseSchedule(1000).alphas_cumprod[-1].item(), 0.01)

    def test_invalid_timesteps(self):
        with self.assertRaises(InvalidScheduleError):
            NoiseSchedule(0)
        with self.assertRaises(InvalidScheduleError):
            sigmoid_beta_schedule(2.5)

    def test_not_in_state_dict(self):
        self.assertEqual(len(NoiseSchedule(10).state_dict()), 0)


class TestNoiseSchedule(unittest.TestCase):
    """Test the v-parameterization helpers."""

    def setUp(self):
        torch.manual_seed(0)
        self.schedule = NoiseSchedule(1000)

    def test_sampling_levels(self):
        levels = self.schedule.sampling_levels(4)
        self.assertEqual(levels.tolist(), [0, 250, 500, 750, 1000])
        self.assertEqual(self.schedule.sampling_levels(1000).tolist(), list(range(1001)))

    def test_sampling_levels_out_of_range(self):
        with self.assertRaises(InvalidScheduleError):
            self.schedule.sampling_levels(0)
        with self.assertRaises(InvalidScheduleError):
            self.schedule.sampling_levels(1001)

    def test_level_out_of_range(self):
        x = torch.randn(1, 2, 3)
        with self.assertRaises(InvalidScheduleError):
            self.schedule.q_sample(x, torch.tensor([[0, 1001]]), torch.randn_like(x))
        with self.assertRaises(InvalidScheduleError):
            self.schedule.q_sample(x, torch.tensor([[-1, 5]]), torch.randn_like(x))

    def test_level_zero_is_clean(self):
        x = torch.randn(2, 3, 4, 2, 2)
        t = torch.zeros(2, 3, dtype=torch.long)
        self.assertTrue(torch.equal(self.schedule.q_sample(x, t, torch.randn_like(x)), x))

    def test_v_inversion(self):
        """x_start and noise are recovered from x_t and the true v."""
        x = torch.randn(2, 3, 4, 2, 2)
        noise = torch.randn_like(x)
        t = torch.randint(10, 1001, (2, 3))

        x_t = self.schedule.q_sample(x, t, noise)
        v = self.schedule.v_target(x, t, noise)
        x_start = self.schedule.predict_start_from_v(x_t, t, v)
        self.assertTrue(torch.allclose(x_start, x, atol=1e-4))

        pred_noise = self.schedule.predict_noise_from_start(x_t, t, x_start)
        self.assertTrue(torch.allclose(pred_noise, noise, atol=1e-3))

    def test_ddim_step_to_clean(self):
        x_start = torch.randn(1, 1, 4, 2, 2)
        noise = torch.randn_like(x_start)
        out = self.schedule.ddim_step(x_start, noise, torch.zeros(1, 1, dtype=torch.long))
        self.assertTrue(torch.equal(out, x_start))


class TestDiffusionLoss(unittest.TestCase):
    """Test the per-frame noise level training loss."""

    def setUp(self):
        torch.manual_seed(0)
        self.model = DiT(input_h=4, input_w=8, patch_size=2, in_channels=4,
                         hidden_size=64, depth=1, num_heads=4, max_frames=4)
        self.schedule = NoiseSchedule(1000)

    def test_loss_computation(self):
        """Test that loss can be computed and is positive."""
        x = torch.randn(2, 3, 4, 4, 8)
        actions = self.model.action_space.null_actions(2, 3)
        loss = diffusion_loss(self.model, self.schedule, x, actions)

        self.assertEqual(loss.dim(), 0)
        self.assertGreater(loss.item(), 0)
        self.assertTrue(torch.isfinite(loss))

    def test_gradients_reach_model(self):
        x = torch.randn(2, 3, 4, 4, 8)
        loss = diffusion_loss(self.model, self.schedule, x, self.model.action_space.null_actions(2, 3))
        loss.backward()

        grad = self.model.final_layer.linear.weight.grad
        self.assertIsNotNone(grad)
        self.assertFalse(torch.all(grad == 0))

    def test_fixed_levels_and_noise(self):
        """A zero-initialized model's loss equals the mean squared v target."""
        x = torch.randn(1, 2, 4, 4, 8)
        noise = torch.randn_like(x)
        t = torch.tensor([[10, 900]])
        loss = diffusion_loss(self.model, self.schedule, x, self.model.action_space.null_actions(1, 2), t, noise)
        expected = (self.schedule.v_target(x, t, noise) ** 2).mean()
        self.assertTrue(torch.allclose(loss, expected))


if __name__ == "__main__":
    unittest.main()
