''' Event data containers: measurements, track seeds and the fitted trajectory (multi-trajectory) of a track.
'''
import numpy as np

# Bound track parameters on a plane: local position, local slopes (du/dw, dv/dw), q/p and time.
# q/p and time are passive for straight tracks (no magnetic field).
bound_parameters = ["local_u", "local_v", "slope_u", "slope_v", "q_over_p", "time"]
n_bound_parameters = len(bound_parameters)


class Measurement(object):
    ''' Measurement of a track on a DUT in the local system of the DUT.

    Parameters
    ----------
    dut_index : int
        Index of the DUT in the telescope.
    values : iterable
        Measured local values (1 or 2).
    covariance : array
        Covariance matrix of the measured values (dim x dim).
    parameter_indices : iterable
        Indices of the measured bound parameters. Default is (0, 1) for 2D and (0, ) for 1D measurements.
    '''

    def __init__(self, dut_index, values, covariance, parameter_indices=None):
        self.dut_index = int(dut_index)
        self.values = np.atleast_1d(np.asarray(values, dtype=np.float64))
        if self.values.shape[0] not in (1, 2):
            raise ValueError("Measurement must have 1 or 2 dimensions.")
        self.covariance = np.atleast_2d(np.asarray(covariance, dtype=np.float64))
        if self.covariance.shape != (self.dim, self.dim):
            raise ValueError("Covariance matrix must have shape (%d, %d)." % (self.dim, self.dim))
        if parameter_indices is None:
            parameter_indices = range(self.dim)
        self.parameter_indices = tuple(int(index) for index in parameter_indices)
        if len(self.parameter_indices) != self.dim or len(set(self.parameter_indices)) != self.dim or not set(self.parameter_indices).issubset((0, 1)):
            raise ValueError("Measured parameters must be distinct local positions.")

    def __repr__(self):
        return "Measurement(dut_index=%d, values=%s)" % (self.dut_index, self.values.tolist())

    @property
    def dim(self):
        return self.values.shape[0]

    @property
    def projector(self):
        ''' Projection matrix (dim x 6) from the bound track parameters onto the measured values.
        '''
        projector = np.zeros(shape=(self.dim, n_bound_parameters), dtype=np.float64)
        for i, index in enumerate(self.parameter_indices):
            projector[i, index] = 1.0
        return projector


class TrackSeed(object):
    ''' Initial track estimate in the global system.

    The covariance (6 x 6) is given for the bound parameters on a plane perpendicular to the
    beam (z) through the seed position.
    '''

    def __init__(self, position, direction, covariance, q_over_p=1.0, time=0.0):
        self.position = np.asarray(position, dtype=np.float64)
        direction = np.asarray(direction, dtype=np.float64)
        if self.position.shape != (3,) or direction.shape != (3,):
            raise ValueError("Seed position and direction must be 3D vectors.")
        if direction[2] <= 0.0:
            raise ValueError("Seed direction must point downstream (positive z).")
        self.direction = direction / np.linalg.norm(direction)
        self.covariance = np.asarray(covariance, dtype=np.float64)
        if self.covariance.shape != (n_bound_parameters, n_bound_parameters):
            raise ValueError("Seed covariance matrix must have shape (6, 6).")
        self.q_over_p = float(q_over_p)
        self.time = float(time)


class TrackState(object):
    ''' State of a track on a DUT. Created by the track fitter.

    A state holds the predicted, filtered and smoothed bound parameters with their covariances.
    States without measurement are passive states (e.g., scattering planes).
    '''

    def __init__(self, index, previous, dut_index, measurement=None):
        self.index = index
        self.previous = previous  # None for the first state
        self.dut_index = dut_index
        self.measurement = measurement
        self.predicted = None
        self.predicted_covariance = None
        self.filtered = None
        self.filtered_covariance = None
        self.smoothed = None
        self.smoothed_covariance = None
        self.jacobian = None  # transport jacobian from the previous state
        self.smoother_gain = None
        self.chi2 = 0.0

    @property
    def has_measurement(self):
        return self.measurement is not None

    @property
    def has_smoothed(self):
        return self.smoothed is not None

    @property
    def parameters(self):
        ''' Best estimate of the track parameters: smoothed, if not available filtered.
        '''
        if self.smoothed is not None:
            return self.smoothed
        return self.filtered

    @property
    def covariance(self):
        if self.smoothed_covariance is not None:
            return self.smoothed_covariance
        return self.filtered_covariance


class MultiTrajectory(object):
    ''' Flat storage of track states. Every state points to its previous state, a track is
    given by the index of the last state (tip) and is traversed backwards.
    '''

    def __init__(self):
        self.states = []

    def __len__(self):
        return len(self.states)

    def __getitem__(self, index):
        return self.states[index]

    def add_state(self, dut_index, previous=None, measurement=None):
        if previous is not None and not 0 <= previous < len(self.states):
            raise IndexError("Previous state %d does not exist." % previous)
        state = TrackState(index=len(self.states), previous=previous, dut_index=dut_index, measurement=measurement)
        self.states.append(state)
        return state

    def visit_backwards(self, entry_index):
        ''' Iterate over the states of a track starting with the tip.
        '''
        index = entry_index
        while index is not None:
            state = self.states[index]
            yield state
            index = state.previous

    def track_states(self, entry_index):
        ''' States of a track in the order of the track direction.
        '''
        return list(reversed(list(self.visit_backwards(entry_index))))
