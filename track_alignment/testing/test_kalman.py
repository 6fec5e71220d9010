''' Script to check the Kalman Filter track fit and the smoother.
'''
import unittest

import numpy as np

from track_alignment.event_data import Measurement
from track_alignment.telescope.dut import Dut
from track_alignment.tools import kalman, simulate_data, test_tools


class TestKalman(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.telescope = test_tools.create_telescope(n_duts=6, distance=20000.0)
        cls.simulate_data = simulate_data.SimulateData(random_seed=0)
        cls.measurements_collection, cls.seeds_collection = cls.simulate_data.create_data(telescope=cls.telescope, n_tracks=200)
        cls.fit_options = kalman.FitOptions(telescope=cls.telescope)
        cls.fitter = kalman.KalmanFitter()

    def test_fit(self):
        chi2_ndf = []
        for measurements, seed in zip(self.measurements_collection, self.seeds_collection):
            fit_result = self.fitter.fit(measurements=measurements, seed=seed, fit_options=self.fit_options)
            track_states = fit_result.track_states
            self.assertEqual(len(track_states), 6)
            self.assertEqual([state.dut_index for state in track_states], self.telescope.z_sorted_dut_indices)
            self.assertEqual(fit_result.ndf, 2 * 6 - 4)
            # Straight line: same slopes on all planes and positions follow the slopes
            for previous_state, state in zip(track_states[:-1], track_states[1:]):
                self.assertTrue(np.allclose(state.smoothed[2:4], previous_state.smoothed[2:4], rtol=0.0, atol=1e-7))
                self.assertTrue(np.allclose(state.smoothed[:2], previous_state.smoothed[:2] + 20000.0 * previous_state.smoothed[2:4], rtol=0.0, atol=1e-3))
            # The smoothed state of the last plane is the filtered state
            self.assertTrue(np.allclose(track_states[-1].smoothed, track_states[-1].filtered))
            chi2_ndf.append(fit_result.chi2 / fit_result.ndf)
        # Measurement errors are the true resolution
        self.assertTrue(0.8 < np.mean(chi2_ndf) < 1.2)

    def test_global_track_parameters_covariance(self):
        fit_result = self.fitter.fit(measurements=self.measurements_collection[0], seed=self.seeds_collection[0], fit_options=self.fit_options)
        covariance, offsets = kalman.global_track_parameters_covariance(trajectory=fit_result.trajectory, entry_index=fit_result.last_measurement_index)
        track_states = fit_result.track_states
        self.assertEqual(covariance.shape, (36, 36))
        self.assertTrue(np.allclose(covariance, covariance.T))
        for state in track_states:
            offset = offsets[state.index]
            self.assertTrue(np.allclose(covariance[offset:offset + 6, offset:offset + 6], state.smoothed_covariance))
        # Without process noise the parameters of neighboring planes are related by the transport jacobian
        offset_0, offset_1 = offsets[track_states[0].index], offsets[track_states[1].index]
        self.assertTrue(np.allclose(covariance[offset_0:offset_0 + 6, offset_1:offset_1 + 6], np.dot(track_states[0].smoothed_covariance, track_states[1].jacobian.T), rtol=1e-5, atol=1e-6))

    def test_passive_states(self):
        measurements = [measurement for measurement in self.measurements_collection[1] if measurement.dut_index != 2]
        seed = self.seeds_collection[1]
        fit_result = self.fitter.fit(measurements=measurements, seed=seed, fit_options=self.fit_options)
        track_states = fit_result.track_states
        self.assertEqual(len(track_states), 6)
        self.assertFalse(track_states[2].has_measurement)
        self.assertTrue(track_states[2].has_smoothed)
        self.assertEqual(track_states[2].chi2, 0.0)
        self.assertEqual(fit_result.ndf, 2 * 5 - 4)
        # No passive states
        fit_result = self.fitter.fit(measurements=measurements, seed=seed, fit_options=kalman.FitOptions(telescope=self.telescope, scattering_duts=[]))
        self.assertEqual([state.dut_index for state in fit_result.track_states], [0, 1, 3, 4, 5])
        # Passive states outside of the measurements are not added
        measurements = [measurement for measurement in self.measurements_collection[1] if measurement.dut_index in (1, 2, 3, 4)]
        fit_result = self.fitter.fit(measurements=measurements, seed=seed, fit_options=self.fit_options)
        self.assertEqual([state.dut_index for state in fit_result.track_states], [1, 2, 3, 4])

    def test_fit_errors(self):
        measurements = self.measurements_collection[0]
        seed = self.seeds_collection[0]
        with self.assertRaises(kalman.FitError):
            self.fitter.fit(measurements=[], seed=seed, fit_options=self.fit_options)
        with self.assertRaises(kalman.FitError):  # two measurements on one DUT
            self.fitter.fit(measurements=measurements + [measurements[0]], seed=seed, fit_options=self.fit_options)
        with self.assertRaises(kalman.FitError):  # unknown DUT
            self.fitter.fit(measurements=[Measurement(dut_index=10, values=(0.0, 0.0), covariance=np.eye(2))], seed=seed, fit_options=self.fit_options)

    def test_one_dimensional_measurements(self):
        measurements = [Measurement(dut_index=measurement.dut_index, values=measurement.values[1:], covariance=measurement.covariance[1:, 1:], parameter_indices=[1]) if measurement.dut_index == 3 else measurement for measurement in self.measurements_collection[2]]
        fit_result = self.fitter.fit(measurements=measurements, seed=self.seeds_collection[2], fit_options=self.fit_options)
        self.assertEqual(fit_result.ndf, 2 * 5 + 1 - 4)
        self.assertTrue(np.allclose(fit_result.track_states[3].measurement.projector, [[0.0, 1.0, 0.0, 0.0, 0.0, 0.0]]))

    def test_multiple_scattering(self):  # Scattering increases the uncertainty of the slopes
        telescope = test_tools.create_telescope(n_duts=6, distance=20000.0, material_budget=0.001)
        measurements, seed = self.measurements_collection[3], self.seeds_collection[3]
        fit_result = self.fitter.fit(measurements=measurements, seed=seed, fit_options=kalman.FitOptions(telescope=telescope))
        fit_result_scattering = self.fitter.fit(measurements=measurements, seed=seed, fit_options=kalman.FitOptions(telescope=telescope, momentum=3200.0, particle_mass=0.511))
        for state, state_scattering in zip(fit_result.track_states[1:], fit_result_scattering.track_states[1:]):
            self.assertGreater(state_scattering.predicted_covariance[2, 2], state.predicted_covariance[2, 2])
            self.assertGreater(state_scattering.predicted_covariance[3, 3], state.predicted_covariance[3, 3])
        with self.assertRaises(ValueError):
            kalman.FitOptions(telescope=telescope, momentum=-1.0)

    def test_transport(self):  # Compare the jacobian with numerical derivatives
        dut = Dut(name="Start", translation_x=10.0, translation_y=-20.0, translation_z=0.0, rotation_alpha=0.01, rotation_beta=-0.02, rotation_gamma=0.3)
        dut_target = Dut(name="Target", translation_x=-50.0, translation_y=30.0, translation_z=10000.0, rotation_alpha=0.2, rotation_beta=0.1, rotation_gamma=-0.4)
        parameters = np.array([100.0, -200.0, 0.01, -0.005, 1.0 / 3200.0, 0.0])

        def transport(parameters):
            return kalman._transport(dut.rotation_matrix, dut.position, dut_target.rotation_matrix, dut_target.position, parameters)

        transported, jacobian, valid = transport(parameters)
        self.assertTrue(valid)
        # Transported position is on the target plane
        x, y, z = dut.local_to_global_position(x=np.array([parameters[0]]), y=np.array([parameters[1]]))
        position = dut_target.intersection(position=np.array([x[0], y[0], z[0]]), direction=dut.local_to_global_direction(slope_u=parameters[2], slope_v=parameters[3]))
        u, v, w = dut_target.global_to_local_position(x=np.array([position[0]]), y=np.array([position[1]]), z=np.array([position[2]]))
        self.assertTrue(np.allclose(transported[:2], [u[0], v[0]]))
        for i, epsilon in enumerate([1e-3, 1e-3, 1e-7, 1e-7, 1e-7, 1e-3]):
            parameters_up = parameters.copy()
            parameters_up[i] += epsilon
            parameters_down = parameters.copy()
            parameters_down[i] -= epsilon
            numerical_derivative = (transport(parameters_up)[0] - transport(parameters_down)[0]) / (2 * epsilon)
            self.assertTrue(np.allclose(jacobian[:, i], numerical_derivative, rtol=1e-4, atol=1e-4))

    def test_check_covariance_matrix(self):
        covariance = np.array([[1.0, 0.5], [0.5 + 1e-12, 1.0]])
        self.assertTrue(np.allclose(kalman.check_covariance_matrix(covariance), [[1.0, 0.5], [0.5, 1.0]]))
        with self.assertRaises(kalman.FitError):
            kalman.check_covariance_matrix(np.diag([1.0, -1.0]))


if __name__ == '__main__':
    import logging
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - [%(levelname)-8s] (%(threadName)-10s) %(message)s")
    suite = unittest.TestLoader().loadTestsFromTestCase(TestKalman)
    unittest.TextTestRunner(verbosity=2).run(suite)
