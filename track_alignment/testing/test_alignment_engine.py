''' Script to check the calculation of the alignment state of single tracks.
'''
import unittest

import numpy as np

from track_alignment import alignment_engine
from track_alignment.tools import kalman, simulate_data, test_tools


class TestAlignmentEngine(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.telescope = test_tools.create_telescope(n_duts=6, distance=20000.0)
        cls.simulate_data = simulate_data.SimulateData(random_seed=1)
        cls.measurements_collection, cls.seeds_collection = cls.simulate_data.create_data(telescope=cls.telescope, n_tracks=10)
        cls.fit_options = kalman.FitOptions(telescope=cls.telescope)
        cls.fitter = kalman.KalmanFitter()

    def _alignment_state(self, measurements, seed, indexed_aligned_duts, alignment_mask=None):
        fit_result = self.fitter.fit(measurements=measurements, seed=seed, fit_options=self.fit_options)
        covariance, offsets = kalman.global_track_parameters_covariance(trajectory=fit_result.trajectory, entry_index=fit_result.last_measurement_index)
        alignment_state = alignment_engine.track_alignment_state(
            telescope=self.telescope,
            trajectory=fit_result.trajectory,
            entry_index=fit_result.last_measurement_index,
            global_track_parameters_covariance=covariance,
            state_offsets=offsets,
            indexed_aligned_duts=indexed_aligned_duts,
            alignment_mask=alignment_mask)
        return alignment_state, fit_result, covariance

    def test_alignment_mask(self):
        self.assertTrue(np.all(alignment_engine.get_alignment_mask()))
        self.assertEqual(alignment_engine.get_alignment_mask(35).tolist(), [True, True, False, False, False, True])
        self.assertEqual(alignment_engine.get_alignment_mask(0).tolist(), [False] * 6)
        self.assertEqual(alignment_engine.get_alignment_mask(["translation_z", "rotation_beta"]).tolist(), [False, False, True, False, True, False])
        self.assertEqual(alignment_engine.get_alignment_mask([True, False, True, False, True, False]).tolist(), [True, False, True, False, True, False])
        for mask in (True, 64, -1, ["translation_w"], [True] * 5, [1, 0, 1, 0, 1, 0]):
            with self.assertRaises(ValueError):
                alignment_engine.get_alignment_mask(mask)

    def test_track_alignment_state(self):
        measurements, seed = self.measurements_collection[0], self.seeds_collection[0]
        alignment_state, fit_result, covariance = self._alignment_state(measurements=measurements, seed=seed, indexed_aligned_duts={4: 0, 2: 1})
        self.assertEqual(alignment_state.measurement_dim, sum(measurement.dim for measurement in measurements))
        self.assertEqual(alignment_state.track_parameters_dim, 36)
        self.assertEqual(alignment_state.alignment_dof, 12)
        # Local index follows the order of the measurements on the track
        self.assertEqual(alignment_state.aligned_duts, {2: (1, 0), 4: (0, 1)})
        self.assertEqual(alignment_state.alignment_to_residual_derivative.shape, (12, 12))
        self.assertEqual(alignment_state.alignment_to_chi2_derivative.shape, (12, ))
        self.assertEqual(alignment_state.alignment_to_chi2_second_derivative.shape, (12, 12))
        # All states carry a measurement
        self.assertTrue(np.allclose(alignment_state.track_parameters_covariance, covariance))
        self.assertTrue(np.allclose(alignment_state.residual_covariance, alignment_state.residual_covariance.T))
        self.assertTrue(np.allclose(alignment_state.alignment_to_chi2_second_derivative, alignment_state.alignment_to_chi2_second_derivative.T))
        # Residuals of the smoothed track are smaller than the measurement errors
        self.assertTrue(np.all(np.diag(alignment_state.residual_covariance) > 0.0))
        self.assertTrue(np.all(np.diag(alignment_state.residual_covariance) < np.diag(alignment_state.measurement_covariance)))
        residual = np.concatenate([measurement.values for measurement in measurements]) - np.concatenate([state.smoothed[:2] for state in fit_result.track_states])
        self.assertTrue(np.allclose(alignment_state.residual, residual))
        self.assertAlmostEqual(alignment_state.chi2, float(np.sum(np.square(residual) / np.diag(alignment_state.measurement_covariance))))
        self.assertAlmostEqual(alignment_state.chi2_ndf, alignment_state.chi2 / 12)
        # Residual derivatives on perpendicular planes: dr/dx = 1 and dr/dz = -slope
        derivative = alignment_state.alignment_to_residual_derivative
        slopes = fit_result.track_states[2].smoothed[2:4]
        self.assertTrue(np.allclose(derivative[4:6, 0:3], [[1.0, 0.0, -slopes[0]], [0.0, 1.0, -slopes[1]]]))
        # Measurements on not aligned DUTs do not depend on the alignment parameters
        self.assertTrue(np.all(derivative[:4] == 0.0))
        self.assertTrue(np.all(derivative[6:8] == 0.0))
        self.assertTrue(np.all(derivative[10:] == 0.0))
        self.assertTrue(np.all(derivative[4:6, 6:] == 0.0))
        self.assertTrue(np.all(derivative[8:10, :6] == 0.0))

    def test_alignment_mask_in_derivatives(self):
        measurements, seed = self.measurements_collection[1], self.seeds_collection[1]
        alignment_mask = alignment_engine.get_alignment_mask(["translation_x", "translation_y", "rotation_gamma"])
        alignment_state, _, _ = self._alignment_state(measurements=measurements, seed=seed, indexed_aligned_duts={1: 0, 3: 1}, alignment_mask=alignment_mask)
        for local_index in range(2):
            block = alignment_state.alignment_to_residual_derivative[:, local_index * 6:(local_index + 1) * 6]
            self.assertTrue(np.all(block[:, ~alignment_mask] == 0.0))
            self.assertTrue(np.any(block[:, alignment_mask] != 0.0))
            self.assertTrue(np.all(alignment_state.alignment_to_chi2_derivative[local_index * 6:(local_index + 1) * 6][~alignment_mask] == 0.0))

    def test_passive_states(self):  # Measurement states only enter the alignment state
        measurements = [measurement for measurement in self.measurements_collection[2] if measurement.dut_index != 3]
        alignment_state, fit_result, covariance = self._alignment_state(measurements=measurements, seed=self.seeds_collection[2], indexed_aligned_duts={2: 0, 3: 1})
        self.assertEqual(alignment_state.measurement_dim, 10)
        self.assertEqual(alignment_state.track_parameters_dim, 30)
        # DUT 3 has no measurement
        self.assertEqual(alignment_state.aligned_duts, {2: (0, 0)})
        self.assertEqual(alignment_state.alignment_dof, 6)
        selection = np.r_[0:18, 24:36]
        self.assertTrue(np.allclose(alignment_state.track_parameters_covariance, covariance[np.ix_(selection, selection)]))

    def test_no_aligned_dut_on_track(self):
        measurements = [measurement for measurement in self.measurements_collection[3] if measurement.dut_index != 5]
        alignment_state, _, _ = self._alignment_state(measurements=measurements, seed=self.seeds_collection[3], indexed_aligned_duts={5: 0})
        self.assertEqual(alignment_state.alignment_dof, 0)
        self.assertEqual(alignment_state.aligned_duts, {})
        self.assertEqual(alignment_state.measurement_dim, 10)
        self.assertIsNone(alignment_state.alignment_to_chi2_derivative)


if __name__ == '__main__':
    import logging
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - [%(levelname)-8s] (%(threadName)-10s) %(message)s")
    suite = unittest.TestLoader().loadTestsFromTestCase(TestAlignmentEngine)
    unittest.TextTestRunner(verbosity=2).run(suite)
