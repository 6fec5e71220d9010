''' This module provides a class that simulates straight particle tracks through a telescope via Monte Carlo.
A random seed can be set.

The tracks are created with gaussian distributed positions and angles upstream of the telescope and are
intersected with the DUT planes of the (true) telescope geometry. The measured positions are the local
intersection points smeared with a gaussian resolution.

Multiple scattering is approximated with the assumption of gaussian distributed scattering angles theta.
Scattering is only calculated at the planes and not in between (scattering in air).
'''
import logging

import numpy as np

from track_alignment.event_data import Measurement, TrackSeed
from track_alignment.telescope.dut import RectangularPixelDut
from track_alignment.tools import geometry_utils


class SimulateData(object):

    def __init__(self, random_seed=0):
        self.random_seed = random_seed
        self.reset()

    def set_random_seed(self, value):
        self.random_seed = value
        # Set the random number seed to be able to rerun with same results
        self._random_state = np.random.RandomState(self.random_seed)

    def set_std_settings(self):
        # Beam settings
        # Average beam position in x, y at the start of the tracks in um
        self.beam_position = (0, 0)
        self.beam_position_sigma = (2000, 2000)  # in x, y in um
        # Distance of the track start upstream of the first DUT in um
        self.beam_start_distance = 1000.0
        # Average beam angle from the beam axis in theta in mRad
        self.beam_angle = 0
        # Deviation from the average beam angle in theta in mRad
        self.beam_angle_sigma = 1
        # The range of directions of the beam (phi in spherical coordinates) in Rad
        self.beam_direction = (0, 2. * np.pi)
        self.beam_momentum = 3200  # Beam momentum in MeV
        # Multiple scattering at DUTs with material budget > 0
        self.multiple_scattering = False

        # Device settings
        # Intrinsic resolution (sigma of the gaussian smearing) in u / v in um
        self.dut_resolution = (2.0, 2.0)
        # Resolution assigned to the measurements in u / v in um, if None the intrinsic resolution is used
        self.measurement_resolution = None
        # Efficiency for each device from 0. to 1.
        self.dut_efficiencies = None
        # Only create hits inside the active area of pixel DUTs
        self.use_dut_limits = False

        # Seed settings
        # Smearing of the seed position in um and the seed slope
        self.seed_position_sigma = 0.0
        self.seed_slope_sigma = 0.0
        # Uncertainties (sigma) assigned to the seed position in um and the seed slope
        self.seed_position_error = 1000.0
        self.seed_slope_error = 0.01

    def reset(self):
        ''' Reset to init configuration '''
        self.set_random_seed(self.random_seed)
        self.set_std_settings()

    def _create_tracks(self, n_tracks, start_z):
        '''Creates tracks with gaussian distributed angles at gaussian distributed positions at z = start_z.

        Returns
        -------
        Two np.arrays with the positions and the directions of the tracks.
        '''
        logging.debug('Create %d tracks at x/y = (%d/%d +- %d/%d) um and theta = (%d +- %d) mRad', n_tracks, self.beam_position[0], self.beam_position[1], self.beam_position_sigma[0], self.beam_position_sigma[1], self.beam_angle, self.beam_angle_sigma)

        if self.beam_angle / 1000. > np.pi or self.beam_angle / 1000. < 0:
            raise ValueError('beam_angle has to be between [0..pi] Rad')

        track_positions = np.zeros(shape=(n_tracks, 3), dtype=np.float64)
        track_positions[:, 2] = start_z
        for i in range(2):
            if self.beam_position_sigma[i] != 0:
                track_positions[:, i] = self._random_state.normal(self.beam_position[i], self.beam_position_sigma[i], n_tracks)
            else:
                track_positions[:, i] = self.beam_position[i]  # Constant position = mean

        if self.beam_angle_sigma != 0:
            track_angles_theta = np.abs(self._random_state.normal(self.beam_angle / 1000., self.beam_angle_sigma / 1000., size=n_tracks))  # Gaussian distributed theta
        else:  # Allow sigma = 0
            track_angles_theta = np.repeat(self.beam_angle / 1000., repeats=n_tracks)  # Constant theta
        if np.any(track_angles_theta >= np.pi / 2):
            raise RuntimeError('Tracks must point downstream, decrease track angle sigma!')

        if self.beam_direction[0] != self.beam_direction[1]:
            track_angles_phi = self._random_state.uniform(self.beam_direction[0], self.beam_direction[1], size=n_tracks)  # Flat distributed in phi
        else:
            track_angles_phi = np.repeat(self.beam_direction[0], repeats=n_tracks)  # Constant phi

        track_directions = np.column_stack(geometry_utils.spherical_to_cartesian(phi=track_angles_phi, theta=track_angles_theta, r=1.))
        return track_positions, track_directions

    def _scatter(self, directions, material_budget):
        ''' Change the track directions by gaussian distributed scattering angles in two orthogonal planes.
        '''
        theta_0 = self._scattering_angle_sigma(material_budget=material_budget)
        if theta_0 == 0:
            return directions
        # Two unit vectors perpendicular to the track
        u_hat = np.cross(directions, np.array([0.0, 1.0, 0.0]))
        u_hat /= np.linalg.norm(u_hat, axis=1)[:, np.newaxis]
        v_hat = np.cross(directions, u_hat)
        scattering_angles = self._random_state.normal(0, theta_0, size=(directions.shape[0], 2))
        directions = directions + scattering_angles[:, 0:1] * u_hat + scattering_angles[:, 1:2] * v_hat
        return directions / np.linalg.norm(directions, axis=1)[:, np.newaxis]

    def _scattering_angle_sigma(self, material_budget, charge_number=1):
        '''Calculates the scattering angle sigma for multiple scattering simulation. A Gaussian distribution
        is assumed with the sigma calculated here.

        Parameters
        ----------
        material_budget : number
            total distance / total radiation length
        charge number: int
            charge number of scattering particles, usually 1
        '''
        if material_budget == 0:
            return 0
        return 13.6 / self.beam_momentum * charge_number * np.sqrt(material_budget) * (1 + 0.038 * np.log(material_budget))

    def create_data(self, telescope, n_tracks, select_duts=None):
        ''' Creates measurements and seeds of straight tracks passing the telescope.

        Parameters
        ----------
        telescope : Telescope
            True telescope geometry.
        n_tracks : int
            Number of tracks.
        select_duts : iterable
            DUT indices where measurements are created. If None, all DUTs are used.

        Returns
        -------
        List of measurements (list of Measurement) for every track and list of TrackSeed.
        '''
        if select_duts is None:
            select_duts = telescope.dut_indices
        z_sorted_dut_indices = telescope.z_sorted_dut_indices
        logging.info('Simulate %d tracks with %d DUTs', n_tracks, len(select_duts))

        start_z = telescope[z_sorted_dut_indices[0]].translation_z - self.beam_start_distance
        track_positions, track_directions = self._create_tracks(n_tracks=n_tracks, start_z=start_z)
        measurement_resolution = self.dut_resolution if self.measurement_resolution is None else self.measurement_resolution
        measurement_covariance = np.diag(np.square(np.array(measurement_resolution, dtype=np.float64)))

        measurements_collection = [[] for _ in range(n_tracks)]
        actual_positions = track_positions
        actual_directions = track_directions
        for dut_index in z_sorted_dut_indices:
            dut = telescope[dut_index]
            intersections = geometry_utils.get_line_intersections_with_plane(
                line_origins=actual_positions,
                line_directions=actual_directions,
                position_plane=dut.position,
                normal_plane=dut.normal)
            if dut_index in select_duts:
                x, y, _ = dut.global_to_local_position(x=intersections[:, 0], y=intersections[:, 1], z=intersections[:, 2])
                x_smeared = x + self._random_state.normal(0, self.dut_resolution[0], n_tracks)
                y_smeared = y + self._random_state.normal(0, self.dut_resolution[1], n_tracks)
                hit_selection = np.isfinite(x_smeared) & np.isfinite(y_smeared)
                if self.use_dut_limits and isinstance(dut, RectangularPixelDut):
                    hit_selection &= dut.is_inside(x_smeared, y_smeared)
                if self.dut_efficiencies is not None:
                    hit_selection &= self._random_state.uniform(0, 1, n_tracks) < self.dut_efficiencies[dut_index]
                for track_index in np.where(hit_selection)[0]:
                    measurements_collection[track_index].append(Measurement(
                        dut_index=dut_index,
                        values=(x_smeared[track_index], y_smeared[track_index]),
                        covariance=measurement_covariance))
            actual_positions = intersections
            # Scatter at actual plane, omit virtual planes (material_budget = 0)
            if self.multiple_scattering and dut.material_budget != 0:
                actual_directions = self._scatter(directions=actual_directions, material_budget=dut.material_budget)

        seed_covariance = np.diag([self.seed_position_error**2, self.seed_position_error**2, self.seed_slope_error**2, self.seed_slope_error**2, 1.0, 1.0])
        seeds_collection = []
        for track_index in range(n_tracks):
            position = track_positions[track_index].copy()
            slopes = track_directions[track_index, :2] / track_directions[track_index, 2]
            if self.seed_position_sigma != 0:
                position[:2] += self._random_state.normal(0, self.seed_position_sigma, 2)
            if self.seed_slope_sigma != 0:
                slopes += self._random_state.normal(0, self.seed_slope_sigma, 2)
            seeds_collection.append(TrackSeed(
                position=position,
                direction=(slopes[0], slopes[1], 1.0),
                covariance=seed_covariance,
                q_over_p=1.0 / self.beam_momentum))
        return measurements_collection, seeds_collection
