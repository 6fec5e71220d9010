''' Kalman Filter with Rauch-Tung-Striebel smoother for straight tracks through a telescope.

The bound track parameters on every plane are (u, v, du/dw, dv/dw, q/p, time) in the local system
of the plane. q/p and time are passive (transported with unit jacobian).
'''
import logging

import numpy as np
from numpy import linalg
from numba import njit

from track_alignment.event_data import MultiTrajectory, n_bound_parameters


class FitError(RuntimeError):
    ''' Raised if a track cannot be fitted.
    '''
    pass


class FitOptions(object):
    ''' Options of the track fit.

    Parameters
    ----------
    telescope : Telescope
        Geometry (DUT positions and orientations) used in the fit.
    momentum : float
        Particle momentum in MeV. If None, multiple scattering is neglected.
    particle_mass : float
        Particle mass in MeV.
    scattering_duts : iterable
        DUT indices which are added as passive states (multiple scattering) if they have no measurement.
        If None, all DUTs of the telescope are used.
    '''

    def __init__(self, telescope, momentum=None, particle_mass=0.0, scattering_duts=None):
        self.telescope = telescope
        self.momentum = None if momentum is None else float(momentum)
        if self.momentum is not None and self.momentum <= 0.0:
            raise ValueError("Momentum must be positive.")
        self.particle_mass = float(particle_mass)
        self.scattering_duts = None if scattering_duts is None else [int(dut_index) for dut_index in scattering_duts]

    @property
    def beta(self):
        return self.momentum / np.sqrt(self.momentum**2 + self.particle_mass**2)


class KalmanFitterResult(object):
    ''' Result of a track fit.

    Parameters
    ----------
    trajectory : MultiTrajectory
        Trajectory containing the fitted track states.
    last_measurement_index : int
        Index of the tip state (last state) of the fitted track.
    '''

    def __init__(self, trajectory, last_measurement_index, chi2, ndf):
        self.trajectory = trajectory
        self.last_measurement_index = last_measurement_index
        self.chi2 = chi2
        self.ndf = ndf

    @property
    def track_states(self):
        return self.trajectory.track_states(self.last_measurement_index)


@njit(cache=True)
def _transport(rotation_matrix, position, rotation_matrix_target, position_target, parameters):
    ''' Reference: V. Karimaki "Straight Line Fit for Pixel and Strip Detectors with Arbitrary Plane Orientations", CMS Note. (http://cds.cern.ch/record/687146/files/note99_041.pdf)
        Transports the track parameters (u, v, u', v') of one plane (u, v, w) to the next plane (U, V, W)
        and calculates the jacobian. Rotations are given from local into global coordinates.
    '''
    # Coordinate transformation into local system of next plane
    R = np.zeros((3, 3))
    for i in range(3):
        for j in range(3):
            for k in range(3):
                R[i, j] += rotation_matrix_target[k, i] * rotation_matrix[k, j]
    x0 = np.zeros(3)
    for i in range(3):
        for k in range(3):
            x0[i] += rotation_matrix_target[k, i] * (position[k] - position_target[k])

    u = parameters[0]
    v = parameters[1]
    up = parameters[2]
    vp = parameters[3]
    point = np.zeros(3)
    direc = np.zeros(3)
    for i in range(3):
        point[i] = R[i, 0] * u + R[i, 1] * v + x0[i]
        direc[i] = R[i, 0] * up + R[i, 1] * vp + R[i, 2]

    transported = parameters.copy()
    J = np.eye(parameters.shape[0])
    if direc[2] == 0.0:  # track parallel to the target plane
        return transported, J, False

    # Step length
    s = -point[2] / direc[2]
    target_up = direc[0] / direc[2]
    target_vp = direc[1] / direc[2]
    transported[0] = point[0] + s * direc[0]
    transported[1] = point[1] + s * direc[1]
    transported[2] = target_up
    transported[3] = target_vp

    # dU/du, dU/dv, Eq (15, 16)
    J[0, 0] = R[0, 0] - R[2, 0] * target_up
    J[0, 1] = R[0, 1] - R[2, 1] * target_up
    # dV/du, dV/dv
    J[1, 0] = R[1, 0] - R[2, 0] * target_vp
    J[1, 1] = R[1, 1] - R[2, 1] * target_vp
    # dU/du', dU/dv', dV/du', dV/dv', Eq (17, 18)
    J[0, 2] = s * J[0, 0]
    J[0, 3] = s * J[0, 1]
    J[1, 2] = s * J[1, 0]
    J[1, 3] = s * J[1, 1]
    # dU'/du', dU'/dv', dV'/du', dV'/dv'
    g2 = direc[2] * direc[2]
    J[2, 2] = (R[0, 0] * direc[2] - direc[0] * R[2, 0]) / g2
    J[2, 3] = (R[0, 1] * direc[2] - direc[0] * R[2, 1]) / g2
    J[3, 2] = (R[1, 0] * direc[2] - direc[1] * R[2, 0]) / g2
    J[3, 3] = (R[1, 1] * direc[2] - direc[1] * R[2, 1]) / g2
    # Slopes do not depend on the impact point
    J[2, 0] = 0.0
    J[2, 1] = 0.0
    J[3, 0] = 0.0
    J[3, 1] = 0.0

    return transported, J, True


def _calculate_scatter_covariance(parameters, material_budget, momentum, beta):
    ''' Covariance (6 x 6) of the local slopes due to multiple scattering in a plane (Highland formula).
    '''
    Q = np.zeros(shape=(n_bound_parameters, n_bound_parameters), dtype=np.float64)
    if momentum is None or material_budget <= 0.0:
        return Q
    up, vp = parameters[2], parameters[3]
    L = 1.0 + up**2 + vp**2
    material_budget_track = material_budget * np.sqrt(L)  # Material budget along the track
    # Variance of projected multiple scattering angle
    theta = (13.6 / momentum / beta) * np.sqrt(material_budget_track) * (1. + 0.038 * np.log(material_budget_track))
    Q[2, 2] = (1.0 + up**2) * L * theta**2
    Q[3, 3] = (1.0 + vp**2) * L * theta**2
    Q[2, 3] = up * vp * L * theta**2
    Q[3, 2] = Q[2, 3]
    return Q


def check_covariance_matrix(cov, atol=1e-5, rtol=1e-8):
    ''' This function checks if the input covariance matrix is positive semi-definite (psd) and symmetrizes it.
    In case it is not psd, it will try to make the matrix psd with the condition that the psd-corrected matrix does not
    differ to much from the original one (works only if the matrix has very small negative eigenvalues, e.g. due to numerical precision, ...)
    '''
    sym_cov = 0.5 * (cov + cov.T)
    eigenvalues = np.linalg.eigvalsh(sym_cov)
    if np.all(eigenvalues >= 0.0):
        return sym_cov
    # Nearest psd matrix (Higham 1988)
    _, s, V = np.linalg.svd(sym_cov)
    psd_cov = 0.5 * (sym_cov + np.dot(V.T, np.dot(np.diag(s), V)))
    psd_cov = 0.5 * (psd_cov + psd_cov.T)
    if np.any(np.absolute(cov - psd_cov) > atol + rtol * np.absolute(psd_cov)):
        raise FitError('Covariance matrix is not positive semi-definite')
    return psd_cov


def _filter_correct(measurement, predicted_state, predicted_state_covariance):
    ''' Filters a predicted state with the measurement.

    Returns
    -------
    filtered_state, filtered_state_covariance, chi2
    '''
    H = measurement.projector
    V = measurement.covariance
    residual = measurement.values - np.dot(H, predicted_state)
    residual_covariance = V + np.linalg.multi_dot([H, predicted_state_covariance, H.T])
    try:
        residual_covariance_inv = linalg.inv(residual_covariance)
    except linalg.LinAlgError:
        raise FitError('Singular residual covariance on DUT%d' % measurement.dut_index)
    kalman_gain = np.linalg.multi_dot([predicted_state_covariance, H.T, residual_covariance_inv])
    filtered_state = predicted_state + np.dot(kalman_gain, residual)
    # Joseph form
    I_KH = np.eye(n_bound_parameters) - np.dot(kalman_gain, H)
    filtered_state_covariance = np.linalg.multi_dot([I_KH, predicted_state_covariance, I_KH.T]) + np.linalg.multi_dot([kalman_gain, V, kalman_gain.T])
    chi2 = float(np.linalg.multi_dot([residual, residual_covariance_inv, residual]))
    return filtered_state, filtered_state_covariance, chi2


class KalmanFitter(object):
    ''' Straight line Kalman Filter and RTS smoother.
    '''

    def fit(self, measurements, seed, fit_options, trajectory=None):
        ''' Fit a track. The DUTs are traversed in the order of their z position.

        Parameters
        ----------
        measurements : iterable
            Measurements of the track, at most one measurement per DUT.
        seed : TrackSeed
            Initial track parameters.
        fit_options : FitOptions
            Options (telescope geometry, multiple scattering).
        trajectory : MultiTrajectory
            Trajectory where the track states are added. If None, a new trajectory is created.

        Returns
        -------
        KalmanFitterResult
        '''
        telescope = fit_options.telescope
        measurements_per_dut = {}
        for measurement in measurements:
            if measurement.dut_index not in telescope:
                raise FitError('DUT%d is not part of the telescope' % measurement.dut_index)
            if measurement.dut_index in measurements_per_dut:
                raise FitError('More than one measurement on DUT%d' % measurement.dut_index)
            measurements_per_dut[measurement.dut_index] = measurement
        if not measurements_per_dut:
            raise FitError('Track has no measurements')

        if fit_options.scattering_duts is None:
            passive_duts = set(telescope.dut_indices)
        else:
            passive_duts = set(fit_options.scattering_duts)
        dut_indices = [dut_index for dut_index in telescope.z_sorted_dut_indices if dut_index in measurements_per_dut or dut_index in passive_duts]
        # remove passive states before the first and after the last measurement
        measurement_positions = [i for i, dut_index in enumerate(dut_indices) if dut_index in measurements_per_dut]
        dut_indices = dut_indices[measurement_positions[0]:measurement_positions[-1] + 1]

        if trajectory is None:
            trajectory = MultiTrajectory()
        states = self._filter(trajectory=trajectory, dut_indices=dut_indices, measurements_per_dut=measurements_per_dut, seed=seed, fit_options=fit_options)
        self._smooth(states=states)

        chi2 = sum(state.chi2 for state in states)
        ndf = sum(state.measurement.dim for state in states if state.has_measurement) - 4
        return KalmanFitterResult(trajectory=trajectory, last_measurement_index=states[-1].index, chi2=chi2, ndf=ndf)

    def _filter(self, trajectory, dut_indices, measurements_per_dut, seed, fit_options):
        telescope = fit_options.telescope
        # Seed parameters on a plane perpendicular to the beam through the seed position
        seed_parameters = np.array([0.0, 0.0, seed.direction[0] / seed.direction[2], seed.direction[1] / seed.direction[2], seed.q_over_p, seed.time], dtype=np.float64)
        current_state = seed_parameters
        current_state_covariance = seed.covariance
        current_rotation_matrix = np.eye(3, dtype=np.float64)
        current_position = seed.position
        current_scatter_covariance = np.zeros_like(seed.covariance)

        states = []
        previous = None
        for dut_index in dut_indices:
            dut = telescope[dut_index]
            rotation_matrix = dut.rotation_matrix
            position = dut.position
            # Extrapolate current filtered state (plane k -> plane k+1)
            predicted_state, track_jacobian, valid = _transport(
                rotation_matrix=current_rotation_matrix,
                position=current_position,
                rotation_matrix_target=rotation_matrix,
                position_target=position,
                parameters=np.ascontiguousarray(current_state))
            if not valid:
                raise FitError('Track does not intersect DUT%d' % dut_index)
            predicted_state_covariance = np.linalg.multi_dot([track_jacobian, current_state_covariance + current_scatter_covariance, track_jacobian.T])

            state = trajectory.add_state(dut_index=dut_index, previous=previous, measurement=measurements_per_dut.get(dut_index))
            state.predicted = predicted_state
            state.predicted_covariance = predicted_state_covariance
            state.jacobian = track_jacobian
            if state.has_measurement:
                state.filtered, state.filtered_covariance, state.chi2 = _filter_correct(
                    measurement=state.measurement,
                    predicted_state=predicted_state,
                    predicted_state_covariance=predicted_state_covariance)
            else:  # Set filtered state to predicted state where no measurement is available.
                state.filtered = predicted_state
                state.filtered_covariance = predicted_state_covariance
            states.append(state)
            previous = state.index

            current_state = state.filtered
            current_state_covariance = state.filtered_covariance
            current_rotation_matrix = rotation_matrix
            current_position = position
            # Add process noise
            current_scatter_covariance = _calculate_scatter_covariance(
                parameters=state.filtered,
                material_budget=dut.material_budget,
                momentum=fit_options.momentum,
                beta=fit_options.beta if fit_options.momentum is not None else 1.0)

        return states

    def _smooth(self, states):
        ''' Rauch-Tung-Striebel smoother. The smoother gain of every state is stored for the calculation of the
        correlation between states.
        '''
        last_state = states[-1]
        last_state.smoothed = last_state.filtered
        last_state.smoothed_covariance = check_covariance_matrix(last_state.filtered_covariance)
        for i in range(len(states) - 2, -1, -1):
            state = states[i]
            next_state = states[i + 1]
            try:
                next_predicted_state_covariance_inv = linalg.inv(next_state.predicted_covariance)
            except linalg.LinAlgError:
                raise FitError('Singular predicted covariance on DUT%d' % next_state.dut_index)
            smoother_gain = np.linalg.multi_dot([state.filtered_covariance, next_state.jacobian.T, next_predicted_state_covariance_inv])
            state.smoother_gain = smoother_gain
            state.smoothed = state.filtered + np.dot(smoother_gain, next_state.smoothed - next_state.predicted)
            state.smoothed_covariance = check_covariance_matrix(state.filtered_covariance + np.linalg.multi_dot([smoother_gain, next_state.smoothed_covariance - next_state.predicted_covariance, smoother_gain.T]))
        logging.debug('Smoothed track with %d states', len(states))


def global_track_parameters_covariance(trajectory, entry_index):
    ''' Joint covariance of the smoothed parameters of all states of a track.

    Cov(i, j) = G_i * G_(i+1) * ... * G_(j-1) * C_j (smoothed) for i < j, with the smoother gains G.

    Returns
    -------
    Covariance matrix (6n x 6n) and a dict with the row offset of every state index.
    '''
    states = trajectory.track_states(entry_index)
    n_states = len(states)
    covariance = np.zeros(shape=(n_bound_parameters * n_states, n_bound_parameters * n_states), dtype=np.float64)
    offsets = {}
    for j, state in enumerate(states):
        if not state.has_smoothed:
            raise FitError('Track state %d is not smoothed' % state.index)
        offsets[state.index] = n_bound_parameters * j
        block = state.smoothed_covariance
        covariance[j * n_bound_parameters:(j + 1) * n_bound_parameters, j * n_bound_parameters:(j + 1) * n_bound_parameters] = block
        for i in range(j - 1, -1, -1):
            block = np.dot(states[i].smoother_gain, block)
            covariance[i * n_bound_parameters:(i + 1) * n_bound_parameters, j * n_bound_parameters:(j + 1) * n_bound_parameters] = block
            covariance[j * n_bound_parameters:(j + 1) * n_bound_parameters, i * n_bound_parameters:(i + 1) * n_bound_parameters] = block.T
    return covariance, offsets
