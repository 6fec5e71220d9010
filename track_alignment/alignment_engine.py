''' Calculation of the alignment state of a fitted track: the residuals, their covariance and the derivatives
of the track chi2 with respect to the alignment parameters of the DUTs hit by the track.
'''
import logging

import numpy as np
from numba import njit

from track_alignment.event_data import n_bound_parameters

# Alignment parameters of a DUT in the order used in all alignment vectors and matrices
alignment_parameters = ["translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma"]
n_alignment_parameters = len(alignment_parameters)


def get_alignment_mask(mask=None):
    ''' Converts an alignment mask into a boolean array of length 6 (True: parameter is aligned).

    Parameters
    ----------
    mask : int, iterable
        None (all parameters aligned), a bit field (bit i enables alignment parameter i),
        a list of alignment parameter names or a list of 6 booleans.

    Returns
    -------
    Boolean array.
    '''
    if mask is None:
        return np.ones(n_alignment_parameters, dtype=bool)
    if isinstance(mask, (bool, np.bool_)):
        raise ValueError("Alignment mask cannot be a single boolean.")
    if isinstance(mask, (int, np.integer)):
        if mask < 0 or mask >= 2**n_alignment_parameters:
            raise ValueError("Alignment mask bit field out of range: %d" % mask)
        return np.array([bool(mask & (1 << i)) for i in range(n_alignment_parameters)], dtype=bool)
    mask = list(mask)
    if all(isinstance(item, str) for item in mask):
        unknown = set(mask) - set(alignment_parameters)
        if unknown:
            raise ValueError("Unknown alignment parameters: %s" % ", ".join(sorted(unknown)))
        return np.array([name in mask for name in alignment_parameters], dtype=bool)
    if len(mask) == n_alignment_parameters and all(isinstance(item, (bool, np.bool_)) for item in mask):
        return np.array(mask, dtype=bool)
    raise ValueError("Alignment mask cannot be parsed.")


class TrackAlignmentState(object):
    ''' Alignment state of a single track.

    The measurement related matrices have the dimension of all measurements on the track,
    the track parameter related matrices 6 x number of measurements, the alignment related
    matrices 6 x number of aligned DUTs hit by the track.
    '''

    def __init__(self):
        self.measurement_covariance = None
        self.projection_matrix = None
        self.track_parameters_covariance = None
        self.residual = None
        self.residual_covariance = None
        self.alignment_to_residual_derivative = None
        self.alignment_to_chi2_derivative = None
        self.alignment_to_chi2_second_derivative = None
        self.aligned_duts = {}  # DUT index -> (alignment slot, local index)
        self.chi2 = 0.0
        self.measurement_dim = 0
        self.track_parameters_dim = 0
        self.alignment_dof = 0

    @property
    def chi2_ndf(self):
        return self.chi2 / self.measurement_dim


@njit(cache=True)
def _fill_track_parameters_covariance(global_track_parameters_covariance, offsets, n_dim, track_parameters_covariance):
    ''' Copy the covariance blocks of the measurement states from the joint covariance of all track states.
    '''
    for i in range(offsets.shape[0]):
        for j in range(offsets.shape[0]):
            for k in range(n_dim):
                for l in range(n_dim):
                    track_parameters_covariance[i * n_dim + k, j * n_dim + l] = global_track_parameters_covariance[offsets[i] + k, offsets[j] + l]


def track_alignment_state(telescope, trajectory, entry_index, global_track_parameters_covariance, state_offsets, indexed_aligned_duts, alignment_mask=None):
    ''' Calculates the alignment state of a fitted track.

    Parameters
    ----------
    telescope : Telescope
        Geometry which was used in the fit.
    trajectory : MultiTrajectory
        Trajectory with the smoothed track states.
    entry_index : int
        Index of the tip state of the track.
    global_track_parameters_covariance : array
        Joint covariance of the smoothed parameters of all track states.
    state_offsets : dict
        Row offset of each state (by state index) in global_track_parameters_covariance.
    indexed_aligned_duts : dict
        Alignment slot for each aligned DUT (by DUT index).
    alignment_mask : array
        Boolean array of length 6. Alignment parameters which are not set have zero derivative.

    Returns
    -------
    TrackAlignmentState
    '''
    alignment_mask = get_alignment_mask(None) if alignment_mask is None else np.asarray(alignment_mask, dtype=bool)
    alignment_state = TrackAlignmentState()

    # Measurement states and aligned DUTs
    measurement_states = []
    n_smoothed_states = 0
    for state in trajectory.visit_backwards(entry_index):
        if state.has_smoothed:
            n_smoothed_states += 1
        if not state.has_measurement:
            continue
        measurement_states.append(state)
        alignment_state.measurement_dim += state.measurement.dim
    measurement_states.reverse()
    for state in measurement_states:
        if state.dut_index in indexed_aligned_duts and state.dut_index not in alignment_state.aligned_duts:
            alignment_state.aligned_duts[state.dut_index] = (indexed_aligned_duts[state.dut_index], len(alignment_state.aligned_duts))
    logging.debug('Track with %d smoothed states, %d measurements and %d aligned DUTs', n_smoothed_states, len(measurement_states), len(alignment_state.aligned_duts))
    if not alignment_state.aligned_duts:
        return alignment_state

    alignment_state.track_parameters_dim = n_bound_parameters * len(measurement_states)
    alignment_state.alignment_dof = n_alignment_parameters * len(alignment_state.aligned_duts)
    measurement_covariance = np.zeros(shape=(alignment_state.measurement_dim, alignment_state.measurement_dim), dtype=np.float64)
    projection_matrix = np.zeros(shape=(alignment_state.measurement_dim, alignment_state.track_parameters_dim), dtype=np.float64)
    residual = np.zeros(shape=alignment_state.measurement_dim, dtype=np.float64)
    alignment_to_residual_derivative = np.zeros(shape=(alignment_state.measurement_dim, alignment_state.alignment_dof), dtype=np.float64)

    offsets = np.zeros(shape=len(measurement_states), dtype=np.int64)
    measurement_index = 0
    for i, state in enumerate(measurement_states):
        measurement = state.measurement
        dim = measurement.dim
        if state.index not in state_offsets:
            raise ValueError("Track state %d is not part of the track parameters covariance." % state.index)
        offsets[i] = state_offsets[state.index]
        projector = measurement.projector
        measurement_covariance[measurement_index:measurement_index + dim, measurement_index:measurement_index + dim] = measurement.covariance
        projection_matrix[measurement_index:measurement_index + dim, i * n_bound_parameters:(i + 1) * n_bound_parameters] = projector
        # smoothed parameters, filtered if the track was not smoothed
        parameters = state.parameters
        residual[measurement_index:measurement_index + dim] = measurement.values - np.dot(projector, parameters)
        if state.dut_index in alignment_state.aligned_duts:
            dut = telescope[state.dut_index]
            position = dut.position + np.dot(dut.rotation_matrix, np.array([parameters[0], parameters[1], 0.0]))
            direction = dut.local_to_global_direction(slope_u=parameters[2], slope_v=parameters[3])
            # the residual is measurement - prediction
            derivative = -np.dot(projector[:, :2], dut.alignment_to_local_position_derivative(position=position, direction=direction))
            derivative[:, ~alignment_mask] = 0.0
            local_index = alignment_state.aligned_duts[state.dut_index][1]
            alignment_to_residual_derivative[measurement_index:measurement_index + dim, local_index * n_alignment_parameters:(local_index + 1) * n_alignment_parameters] = derivative
        measurement_index += dim

    track_parameters_covariance = np.zeros(shape=(alignment_state.track_parameters_dim, alignment_state.track_parameters_dim), dtype=np.float64)
    _fill_track_parameters_covariance(
        np.ascontiguousarray(global_track_parameters_covariance, dtype=np.float64),
        offsets,
        n_bound_parameters,
        track_parameters_covariance)

    measurement_covariance_inv = np.linalg.inv(measurement_covariance)
    alignment_state.chi2 = float(np.linalg.multi_dot([residual, measurement_covariance_inv, residual]))

    residual_covariance = measurement_covariance - np.linalg.multi_dot([projection_matrix, track_parameters_covariance, projection_matrix.T])
    residual_covariance = 0.5 * (residual_covariance + residual_covariance.T)

    # Chain rule through the residuals
    weighted_residual_covariance = np.linalg.multi_dot([measurement_covariance_inv, residual_covariance, measurement_covariance_inv])
    alignment_state.alignment_to_chi2_derivative = 2.0 * np.linalg.multi_dot([alignment_to_residual_derivative.T, weighted_residual_covariance, residual])
    alignment_state.alignment_to_chi2_second_derivative = 2.0 * np.linalg.multi_dot([alignment_to_residual_derivative.T, weighted_residual_covariance, alignment_to_residual_derivative])

    alignment_state.measurement_covariance = measurement_covariance
    alignment_state.projection_matrix = projection_matrix
    alignment_state.track_parameters_covariance = track_parameters_covariance
    alignment_state.residual = residual
    alignment_state.residual_covariance = residual_covariance
    alignment_state.alignment_to_residual_derivative = alignment_to_residual_derivative
    return alignment_state
