''' Script to check the DUT and telescope geometry (configuration files, transformations, alignment derivatives)
'''
import os
import shutil
import tempfile
import unittest

import numpy as np

from track_alignment.telescope.telescope import Telescope, update_dut_transform
from track_alignment.telescope.dut import Dut, RectangularPixelDut, Mimosa26
from track_alignment.tools import geometry_utils


telescope_configuration = '''
TELESCOPE:
  DUT:
    0:
      dut_type: Mimosa26
      translation_x: 0.0
      translation_y: 0.0
      translation_z: 0.0
      rotation_alpha: 0.0
      rotation_beta: 0.0
      rotation_gamma: 0.0
      material_budget: 0.0005
    1:
      dut_type: RectangularPixelDut
      name: FEI4 DUT
      translation_x: 100.0
      translation_y: -50.0
      translation_z: 300000.0
      rotation_alpha: 0.0
      rotation_beta: 0.0
      rotation_gamma: 3.14
      column_size: 250.0
      row_size: 50.0
      n_columns: 80
      n_rows: 336
    2:
      dut_type: Dut
      translation_x: 0.0
      translation_y: 0.0
      translation_z: 150000.0
      rotation_alpha: 0.0
      rotation_beta: 0.0
      rotation_gamma: 0.0
'''


def _local_intersection(dut, position, direction):
    x, y, z = dut.intersection(position=position, direction=direction)
    u, v, _ = dut.global_to_local_position(x=np.array([x]), y=np.array([y]), z=np.array([z]))
    return np.array([u[0], v[0]])


class TestTelescope(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.output_folder = tempfile.mkdtemp()

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.output_folder)

    def test_load_configuration(self):
        telescope = Telescope(telescope_configuration)
        self.assertEqual(len(telescope), 3)
        self.assertTrue(isinstance(telescope[0], Mimosa26))
        self.assertTrue(isinstance(telescope[1], RectangularPixelDut))
        self.assertEqual(telescope[0].name, 'DUT0')
        self.assertEqual(telescope[1].name, 'FEI4 DUT')
        self.assertEqual(telescope[1].pixel_size, (250.0, 50.0))
        self.assertAlmostEqual(telescope[0].material_budget, 0.0005)
        self.assertEqual(telescope.dut_indices, [0, 1, 2])
        self.assertEqual(telescope.z_sorted_dut_indices, [0, 2, 1])
        with self.assertRaises(ValueError):
            Telescope("NOT_A_TELESCOPE: 1")

    def test_save_configuration(self):  # Write and read back the configuration
        telescope = Telescope(telescope_configuration)
        telescope[2].translation_x = 12.5
        telescope[2].rotation_gamma = 0.001
        configuration_file = os.path.join(self.output_folder, 'telescope.yaml')
        telescope.save_configuration(configuration_file)
        telescope_reloaded = Telescope(configuration_file)
        self.assertEqual(telescope_reloaded.dut_names, telescope.dut_names)
        for dut_index in telescope.dut_indices:
            self.assertEqual(telescope_reloaded[dut_index].__class__, telescope[dut_index].__class__)
            self.assertTrue(np.allclose(telescope_reloaded[dut_index].transform, telescope[dut_index].transform))

    def test_add_dut(self):
        telescope = Telescope()
        telescope.add_dut(dut_type="Mimosa26", dut_id=3, translation_x=0, translation_y=0, translation_z=1000, rotation_alpha=0, rotation_beta=0, rotation_gamma=0)
        telescope.add_dut(dut_type=Dut, dut_id=1, translation_x=0, translation_y=0, translation_z=2000, rotation_alpha=0, rotation_beta=0, rotation_gamma=0)
        self.assertEqual(telescope.dut_names, ['DUT1', 'DUT3'])
        with self.assertRaises(ValueError):
            telescope.add_dut(dut_type="Mimosa26", dut_id="4", translation_x=0, translation_y=0, translation_z=1000, rotation_alpha=0, rotation_beta=0, rotation_gamma=0)
        with self.assertRaises(ValueError):
            telescope[5] = "no DUT"

    def test_transform(self):
        dut = Dut(name="Plane", translation_x=10.0, translation_y=-5.0, translation_z=1000.0, rotation_alpha=0.01, rotation_beta=-0.02, rotation_gamma=0.5)
        transform = dut.transform
        self.assertTrue(np.allclose(transform[:3, 3], dut.position))
        self.assertTrue(np.allclose(transform[:3, :3], dut.rotation_matrix))
        # Setting the transformation updates the alignment parameters
        dut.transform = geometry_utils.local_to_global_transformation_matrix(1.0, 2.0, 3.0, 0.1, 0.2, 0.3)
        self.assertTrue(np.allclose(dut.alignment_parameters, [1.0, 2.0, 3.0, 0.1, 0.2, 0.3]))
        with self.assertRaises(ValueError):
            dut.transform = np.full((4, 4), np.nan)
        with self.assertRaises(ValueError):
            dut.transform = 2.0 * np.eye(4)
        # Local to global and back
        x, y, z = dut.local_to_global_position(x=[0.0, 100.0], y=[0.0, -100.0])
        u, v, w = dut.global_to_local_position(x=x, y=y, z=z)
        self.assertTrue(np.allclose(u, [0.0, 100.0]))
        self.assertTrue(np.allclose(v, [0.0, -100.0]))
        self.assertTrue(np.allclose(w, 0.0))

    def test_update_dut_transform(self):
        telescope = Telescope(telescope_configuration)
        transform = geometry_utils.local_to_global_transformation_matrix(5.0, 6.0, 150000.0, 0.0, 0.0, 0.01)
        self.assertTrue(update_dut_transform(2, telescope, transform))
        self.assertAlmostEqual(telescope[2].translation_x, 5.0)
        self.assertAlmostEqual(telescope[2].rotation_gamma, 0.01)
        self.assertFalse(update_dut_transform(2, telescope, np.full((4, 4), np.nan)))
        self.assertFalse(update_dut_transform(7, telescope, transform))

    def test_directions(self):
        dut = Dut(name="Plane", translation_x=0.0, translation_y=0.0, translation_z=0.0, rotation_alpha=0.1, rotation_beta=0.2, rotation_gamma=0.3)
        direction = dut.local_to_global_direction(slope_u=0.01, slope_v=-0.02)
        self.assertAlmostEqual(np.linalg.norm(direction), 1.0)
        self.assertTrue(np.allclose(dut.global_to_local_direction(direction), (0.01, -0.02)))

    def test_alignment_derivative_perpendicular_plane(self):
        # For a plane perpendicular to the beam: du/dx = -1, dv/dy = -1, du/dz = slope u, dv/dz = slope v
        dut = Dut(name="Plane", translation_x=0.0, translation_y=0.0, translation_z=1000.0, rotation_alpha=0.0, rotation_beta=0.0, rotation_gamma=0.0)
        direction = np.array([0.01, -0.02, 1.0])
        position = dut.intersection(position=np.array([100.0, 200.0, 0.0]), direction=direction)
        derivative = dut.alignment_to_local_position_derivative(position=position, direction=direction)
        self.assertTrue(np.allclose(derivative[:, :3], [[-1.0, 0.0, 0.01], [0.0, -1.0, -0.02]]))
        # Rotation around z
        self.assertTrue(np.allclose(derivative[:, 5], [position[1], -position[0]]))

    def test_alignment_derivative(self):  # Compare with numerical derivatives
        dut = Dut(name="Plane", translation_x=100.0, translation_y=-200.0, translation_z=10000.0, rotation_alpha=0.05, rotation_beta=-0.1, rotation_gamma=0.2)
        track_position = np.array([1500.0, -800.0, 0.0])
        track_direction = np.array([0.02, 0.01, 1.0])
        position = dut.intersection(position=track_position, direction=track_direction)
        derivative = dut.alignment_to_local_position_derivative(position=position, direction=track_direction)
        parameters = dut.alignment_parameters
        for i, epsilon in enumerate([1e-3, 1e-3, 1e-3, 1e-7, 1e-7, 1e-7]):
            dut_up = Dut(name="Plane", translation_x=0, translation_y=0, translation_z=0, rotation_alpha=0, rotation_beta=0, rotation_gamma=0)
            dut_down = Dut(name="Plane", translation_x=0, translation_y=0, translation_z=0, rotation_alpha=0, rotation_beta=0, rotation_gamma=0)
            parameters_up = parameters.copy()
            parameters_up[i] += epsilon
            parameters_down = parameters.copy()
            parameters_down[i] -= epsilon
            dut_up.transform = geometry_utils.local_to_global_transformation_matrix(*parameters_up)
            dut_down.transform = geometry_utils.local_to_global_transformation_matrix(*parameters_down)
            numerical_derivative = (_local_intersection(dut_up, track_position, track_direction) - _local_intersection(dut_down, track_position, track_direction)) / (2 * epsilon)
            self.assertTrue(np.allclose(derivative[:, i], numerical_derivative, rtol=1e-4, atol=1e-4))


if __name__ == '__main__':
    import logging
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - [%(levelname)-8s] (%(threadName)-10s) %(message)s")
    suite = unittest.TestLoader().loadTestsFromTestCase(TestTelescope)
    unittest.TextTestRunner(verbosity=2).run(suite)
