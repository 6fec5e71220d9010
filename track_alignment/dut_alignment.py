''' Track based alignment of DUTs: the track chi2 of many fitted tracks is minimized with respect to the
alignment parameters (3 translations and 3 rotations) of the aligned DUTs in an iterative Gauss-Newton procedure.
'''
import logging
from collections import deque
from enum import Enum
from multiprocessing import Pool

import numpy as np
import scipy.linalg
from numba import njit
from tqdm import tqdm

from track_alignment.alignment_engine import track_alignment_state, get_alignment_mask, alignment_parameters, n_alignment_parameters
from track_alignment.telescope.telescope import update_dut_transform, open_configuration
from track_alignment.tools import geometry_utils
from track_alignment.tools.kalman import KalmanFitter, FitError, global_track_parameters_covariance
from track_alignment.tools.storage_utils import save_configuration_dict, store_alignment_iteration


class AlignmentError(Exception):
    pass


class NoAlignmentDofOnTrackError(AlignmentError):
    ''' The track has no measurement on any aligned DUT.
    '''
    pass


class AlignmentParametersUpdateError(AlignmentError):
    ''' The transformation of an aligned DUT could not be updated.
    '''
    pass


class SingularMatrixError(AlignmentError):
    ''' The second derivative of the chi2 with respect to the alignment parameters cannot be inverted.
    '''
    pass


class AlignmentStatus(Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    FAILED = "failed"


# Failure reasons
UPDATE_FAILURE = "update-failure"
SINGULAR_MATRIX = "singular-matrix"
DID_NOT_CONVERGE = "did-not-converge"


class AlignmentOptions(object):
    ''' Options of the alignment.

    Parameters
    ----------
    fit_options : FitOptions
        Options of the track fit, including the telescope which is aligned.
    aligned_duts : iterable
        Indices of the DUTs to be aligned. The order defines the position of the alignment parameters
        of the DUTs in the alignment vectors.
    transform_updater : callable
        Function (dut_index, telescope, transform) -> bool which sets the new transformation matrix of a DUT.
        Default is telescope.update_dut_transform().
    average_chi2_ndf_cut_off : float
        The alignment is converged if the average chi2/ndf of the tracks is below this value.
    delta_average_chi2_ndf_cut_off : tuple
        (window size, tolerance). The alignment is converged if the average chi2/ndf changed less than
        the tolerance within the last window size iterations.
    max_iterations : int
        Maximum number of iterations.
    iteration_masks : dict
        Alignment mask for certain iterations (iteration index -> mask). Iterations without mask align all parameters.
        A mask is a bit field (bit i enables alignment parameter i), a list of alignment parameter names
        or a list of 6 booleans.
    fail_on_singular_matrix : bool
        If True, a singular chi2 second derivative stops the alignment. Otherwise only a warning is given.
    n_workers : int
        Number of processes used for the track fits.
    output_alignment_file : string
        HDF5 file where the alignment parameters of every iteration are stored. If None, nothing is stored.
    '''

    def __init__(self, fit_options, aligned_duts, transform_updater=None, average_chi2_ndf_cut_off=0.05, delta_average_chi2_ndf_cut_off=(10, 1e-5), max_iterations=5, iteration_masks=None, fail_on_singular_matrix=True, n_workers=1, output_alignment_file=None):
        self.fit_options = fit_options
        self.aligned_duts = [int(dut_index) for dut_index in aligned_duts]
        if len(set(self.aligned_duts)) != len(self.aligned_duts):
            raise ValueError("Aligned DUTs must be unique.")
        self.transform_updater = update_dut_transform if transform_updater is None else transform_updater
        if not callable(self.transform_updater):
            raise ValueError("Transform updater must be callable.")
        self.average_chi2_ndf_cut_off = float(average_chi2_ndf_cut_off)
        if len(delta_average_chi2_ndf_cut_off) != 2:
            raise ValueError("delta_average_chi2_ndf_cut_off must be a tuple (window size, tolerance).")
        window_size, tolerance = delta_average_chi2_ndf_cut_off
        if int(window_size) < 1 or float(tolerance) < 0.0:
            raise ValueError("Window size must be positive and tolerance must not be negative.")
        self.delta_average_chi2_ndf_cut_off = (int(window_size), float(tolerance))
        if int(max_iterations) < 0:
            raise ValueError("Maximum number of iterations must not be negative.")
        self.max_iterations = int(max_iterations)
        self.iteration_masks = {}
        if iteration_masks:
            for iteration, mask in iteration_masks.items():
                self.iteration_masks[int(iteration)] = get_alignment_mask(mask)
        self.fail_on_singular_matrix = bool(fail_on_singular_matrix)
        if int(n_workers) < 1:
            raise ValueError("Number of workers must be at least 1.")
        self.n_workers = int(n_workers)
        self.output_alignment_file = output_alignment_file

    @classmethod
    def from_configuration(cls, configuration, fit_options, transform_updater=None):
        ''' Create alignment options from the ALIGNMENT section of a configuration (YAML file, YAML string or dict).
        '''
        configuration = open_configuration(configuration)
        if "ALIGNMENT" not in configuration:
            raise ValueError("Configuration has no ALIGNMENT section.")
        alignment_configuration = dict(configuration["ALIGNMENT"])
        allowed_keys = ["aligned_duts", "average_chi2_ndf_cut_off", "delta_average_chi2_ndf_cut_off", "max_iterations", "iteration_masks", "fail_on_singular_matrix", "n_workers", "output_alignment_file"]
        unknown_keys = set(alignment_configuration.keys()) - set(allowed_keys)
        if unknown_keys:
            raise ValueError("Unknown alignment options: %s" % ", ".join(sorted(unknown_keys)))
        if "aligned_duts" not in alignment_configuration:
            raise ValueError("No aligned DUTs given.")
        if "delta_average_chi2_ndf_cut_off" in alignment_configuration:
            alignment_configuration["delta_average_chi2_ndf_cut_off"] = tuple(alignment_configuration["delta_average_chi2_ndf_cut_off"])
        return cls(fit_options=fit_options, transform_updater=transform_updater, **alignment_configuration)

    def get_alignment_mask(self, iteration):
        return self.iteration_masks.get(iteration, get_alignment_mask(None))

    def to_dict(self):
        return {
            "aligned_duts": self.aligned_duts,
            "average_chi2_ndf_cut_off": self.average_chi2_ndf_cut_off,
            "delta_average_chi2_ndf_cut_off": self.delta_average_chi2_ndf_cut_off,
            "max_iterations": self.max_iterations,
            "iteration_masks": {iteration: mask.tolist() for iteration, mask in self.iteration_masks.items()},
            "fail_on_singular_matrix": self.fail_on_singular_matrix,
            "n_workers": self.n_workers,
            "momentum": self.fit_options.momentum,
            "particle_mass": self.fit_options.particle_mass}


class AlignmentResult(object):
    ''' Result of the alignment. Updated in every iteration.
    '''

    def __init__(self):
        self.delta_alignment_parameters = None
        self.alignment_covariance = None
        self.chi2 = 0.0
        self.measurement_dim = 0
        self.average_chi2_ndf = np.nan
        self.delta_chi2 = 0.0
        self.num_tracks = 0
        self.alignment_dof = 0
        self.aligned_parameters = {}  # DUT index -> transformation matrix
        self.status = AlignmentStatus.RUNNING
        self.failure_reason = None
        self.n_iterations = 0
        self.history = []  # average chi2/ndf of every iteration

    @property
    def converged(self):
        return self.status == AlignmentStatus.CONVERGED

    def alignment_errors(self, slot):
        ''' Uncertainties of the 6 alignment parameters of the DUT with the given alignment slot.
        '''
        return np.sqrt(np.abs(np.diag(self.alignment_covariance)[slot * n_alignment_parameters:(slot + 1) * n_alignment_parameters]))


class ConvergenceMonitor(object):
    ''' Checks the convergence of the average chi2/ndf.

    The alignment is converged if the average chi2/ndf is below the cut off or if the difference of the average
    chi2/ndf to the oldest value of the last window size iterations is within the tolerance.
    '''

    def __init__(self, average_chi2_ndf_cut_off, delta_average_chi2_ndf_cut_off):
        self.average_chi2_ndf_cut_off = average_chi2_ndf_cut_off
        self.window_size, self.tolerance = delta_average_chi2_ndf_cut_off
        self.recent_average_chi2_ndf = deque()

    def update(self, average_chi2_ndf):
        ''' Add the average chi2/ndf of an iteration.

        Returns
        -------
        True if converged.
        '''
        if average_chi2_ndf <= self.average_chi2_ndf_cut_off:
            logging.info('Alignment has converged with average chi2/ndf smaller than %s', self.average_chi2_ndf_cut_off)
            return True
        if len(self.recent_average_chi2_ndf) >= self.window_size:
            if np.abs(self.recent_average_chi2_ndf[0] - average_chi2_ndf) <= self.tolerance:
                logging.info('Alignment has converged with change of chi2/ndf smaller than %s in the latest %d iterations', self.tolerance, self.window_size)
                return True
            self.recent_average_chi2_ndf.popleft()
        self.recent_average_chi2_ndf.append(average_chi2_ndf)
        return False


class AlignmentSums(object):
    ''' Sums of the alignment states of many tracks.
    '''

    def __init__(self, alignment_dof):
        self.sum_chi2_derivative = np.zeros(shape=alignment_dof, dtype=np.float64)
        self.sum_chi2_second_derivative = np.zeros(shape=(alignment_dof, alignment_dof), dtype=np.float64)
        self.chi2 = 0.0
        self.measurement_dim = 0
        self.num_tracks = 0
        self.sum_chi2_ndf = 0.0
        self.n_failed_fits = 0
        self.n_tracks_without_alignment_dof = 0

    def add(self, alignment_state):
        slots = np.zeros(shape=len(alignment_state.aligned_duts), dtype=np.int64)
        for slot, local_index in alignment_state.aligned_duts.values():
            slots[local_index] = slot
        _accumulate_alignment_state(
            self.sum_chi2_derivative,
            self.sum_chi2_second_derivative,
            alignment_state.alignment_to_chi2_derivative,
            np.ascontiguousarray(alignment_state.alignment_to_chi2_second_derivative),
            slots,
            n_alignment_parameters)
        self.chi2 += alignment_state.chi2
        self.measurement_dim += alignment_state.measurement_dim
        self.sum_chi2_ndf += alignment_state.chi2 / alignment_state.measurement_dim
        self.num_tracks += 1

    def merge(self, other):
        self.sum_chi2_derivative += other.sum_chi2_derivative
        self.sum_chi2_second_derivative += other.sum_chi2_second_derivative
        self.chi2 += other.chi2
        self.measurement_dim += other.measurement_dim
        self.num_tracks += other.num_tracks
        self.sum_chi2_ndf += other.sum_chi2_ndf
        self.n_failed_fits += other.n_failed_fits
        self.n_tracks_without_alignment_dof += other.n_tracks_without_alignment_dof

    @property
    def average_chi2_ndf(self):
        if self.num_tracks == 0:
            return np.nan
        return self.sum_chi2_ndf / self.num_tracks


@njit(cache=True)
def _accumulate_alignment_state(sum_chi2_derivative, sum_chi2_second_derivative, chi2_derivative, chi2_second_derivative, slots, n_dim):
    ''' Add the derivatives of a single track to the derivatives of all tracks.
    '''
    for row in range(slots.shape[0]):
        for k in range(n_dim):
            sum_chi2_derivative[slots[row] * n_dim + k] += chi2_derivative[row * n_dim + k]
        for col in range(slots.shape[0]):
            for k in range(n_dim):
                for l in range(n_dim):
                    sum_chi2_second_derivative[slots[row] * n_dim + k, slots[col] * n_dim + l] += chi2_second_derivative[row * n_dim + k, col * n_dim + l]


def solve_alignment_parameters(sum_chi2_derivative, sum_chi2_second_derivative, free_parameters=None, fail_on_singular_matrix=True):
    ''' Solves sum_chi2_second_derivative * delta = -sum_chi2_derivative for the free alignment parameters.

    Alignment parameters which are not free have zero change and zero covariance.

    Parameters
    ----------
    sum_chi2_derivative : array
        First derivative of the chi2 (n).
    sum_chi2_second_derivative : array
        Second derivative of the chi2 (n x n).
    free_parameters : array
        Boolean array (n). If None, all parameters are free.
    fail_on_singular_matrix : bool
        If True, raise SingularMatrixError if the second derivative cannot be inverted.
        Otherwise the covariance is set to NaN and the least squares solution is used.

    Returns
    -------
    delta_alignment_parameters, alignment_covariance (2 * inverse of the second derivative), delta_chi2
    '''
    alignment_dof = sum_chi2_derivative.shape[0]
    free_parameters = np.ones(alignment_dof, dtype=bool) if free_parameters is None else np.asarray(free_parameters, dtype=bool)
    delta_alignment_parameters = np.zeros(shape=alignment_dof, dtype=np.float64)
    alignment_covariance = np.zeros(shape=(alignment_dof, alignment_dof), dtype=np.float64)
    if not np.any(free_parameters):
        logging.warning('No free alignment parameters')
        return delta_alignment_parameters, alignment_covariance, 0.0

    free_indices = np.where(free_parameters)[0]
    H = sum_chi2_second_derivative[np.ix_(free_indices, free_indices)]
    g = sum_chi2_derivative[free_indices]
    # Scale to unit diagonal for better condition
    diagonal = np.diag(H)
    singular = not np.all(np.isfinite(H)) or np.any(diagonal <= 0.0)
    if not singular:
        scale = 1.0 / np.sqrt(diagonal)
        H_scaled = H * np.outer(scale, scale)
        try:
            H_scaled_inv = scipy.linalg.inv(H_scaled)
        except (scipy.linalg.LinAlgError, ValueError):
            singular = True
        else:
            singular = not np.all(np.isfinite(H_scaled_inv)) or np.linalg.cond(H_scaled) > 1.0 / np.finfo(np.float64).eps
    if singular:
        if fail_on_singular_matrix:
            raise SingularMatrixError('Chi2 second derivative is singular')
        logging.warning('Chi2 second derivative inverse has NaN')
        delta_free = -scipy.linalg.lstsq(np.nan_to_num(H), np.nan_to_num(g))[0]
        covariance_free = np.full_like(H, fill_value=np.nan)
    else:
        H_inv = H_scaled_inv * np.outer(scale, scale)
        delta_free = -scale * scipy.linalg.solve(H_scaled, scale * g, assume_a='sym')
        covariance_free = 2.0 * H_inv

    delta_alignment_parameters[free_indices] = delta_free
    alignment_covariance[np.ix_(free_indices, free_indices)] = covariance_free
    delta_chi2 = 0.5 * float(np.dot(sum_chi2_derivative, delta_alignment_parameters))
    return delta_alignment_parameters, alignment_covariance, delta_chi2


def apply_alignment_parameters(telescope, aligned_duts, delta_alignment_parameters, transform_updater=update_dut_transform):
    ''' Adds the change of the alignment parameters to the transformation of each aligned DUT.

    The new transformation is T(center + delta center) * Rz(gamma + delta gamma) * Ry(beta + delta beta) * Rx(alpha + delta alpha).
    Stops with AlignmentParametersUpdateError at the first DUT which cannot be updated.
    '''
    for slot, dut_index in enumerate(aligned_duts):
        translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma = geometry_utils.decompose_transformation_matrix(telescope[dut_index].transform)
        delta = delta_alignment_parameters[slot * n_alignment_parameters:(slot + 1) * n_alignment_parameters]
        logging.debug('Delta of alignment parameters of DUT%d: %s', dut_index, ", ".join("%s = %.4g" % (name, value) for name, value in zip(alignment_parameters, delta)))
        transform = geometry_utils.local_to_global_transformation_matrix(
            x=translation_x + delta[0],
            y=translation_y + delta[1],
            z=translation_z + delta[2],
            alpha=rotation_alpha + delta[3],
            beta=rotation_beta + delta[4],
            gamma=rotation_gamma + delta[5])
        if not transform_updater(dut_index, telescope, transform):
            raise AlignmentParametersUpdateError('Update of alignment parameters of DUT%d failed' % dut_index)


def _accumulate_tracks(fitter, measurements_collection, seeds_collection, fit_options, indexed_aligned_duts, alignment_mask, progress_bar=False):
    ''' Fits tracks and sums their alignment states. Called for each chunk of tracks.
    '''
    alignment = Alignment(fitter=fitter)
    alignment_sums = AlignmentSums(alignment_dof=n_alignment_parameters * len(indexed_aligned_duts))
    if progress_bar:
        pbar = tqdm(total=len(measurements_collection), ncols=80)
    for track_index, (measurements, seed) in enumerate(zip(measurements_collection, seeds_collection)):
        try:
            alignment_state = alignment.evaluate_track_alignment_state(
                measurements=measurements,
                seed=seed,
                fit_options=fit_options,
                indexed_aligned_duts=indexed_aligned_duts,
                alignment_mask=alignment_mask)
        except FitError as e:
            logging.debug('Evaluation of alignment state for track %d failed: %s', track_index, e)
            alignment_sums.n_failed_fits += 1
        except NoAlignmentDofOnTrackError:
            alignment_sums.n_tracks_without_alignment_dof += 1
        else:
            alignment_sums.add(alignment_state)
        if progress_bar:
            pbar.update(1)
    if progress_bar:
        pbar.close()
    return alignment_sums


class Alignment(object):
    ''' Track based alignment with a Kalman Filter track fit.

    Parameters
    ----------
    fitter : KalmanFitter
        Track fitter. If None, a new KalmanFitter is used.
    '''

    def __init__(self, fitter=None):
        self.fitter = KalmanFitter() if fitter is None else fitter

    def evaluate_track_alignment_state(self, measurements, seed, fit_options, indexed_aligned_duts, alignment_mask=None):
        ''' Fits a track and calculates its alignment state.

        Raises FitError if the fit failed and NoAlignmentDofOnTrackError if the track has no measurement
        on any aligned DUT.
        '''
        fit_result = self.fitter.fit(measurements=measurements, seed=seed, fit_options=fit_options)
        covariance, state_offsets = global_track_parameters_covariance(trajectory=fit_result.trajectory, entry_index=fit_result.last_measurement_index)
        alignment_state = track_alignment_state(
            telescope=fit_options.telescope,
            trajectory=fit_result.trajectory,
            entry_index=fit_result.last_measurement_index,
            global_track_parameters_covariance=covariance,
            state_offsets=state_offsets,
            indexed_aligned_duts=indexed_aligned_duts,
            alignment_mask=alignment_mask)
        if alignment_state.alignment_dof == 0:
            raise NoAlignmentDofOnTrackError('Track has no measurement on aligned DUTs')
        return alignment_state

    def accumulate(self, measurements_collection, seeds_collection, fit_options, indexed_aligned_duts, alignment_mask=None, n_workers=1):
        ''' Sums the chi2 derivatives of all tracks.

        Parameters
        ----------
        measurements_collection : list
            Measurements of every track.
        seeds_collection : list
            Seed of every track.
        fit_options : FitOptions
            Options of the track fit.
        indexed_aligned_duts : dict
            Alignment slot for each aligned DUT (by DUT index).
        alignment_mask : array
            Boolean array of length 6.
        n_workers : int
            Number of processes. Each process sums a chunk of tracks.

        Returns
        -------
        AlignmentSums
        '''
        if len(measurements_collection) != len(seeds_collection):
            raise ValueError("Number of measurement collections and seeds differs.")
        if n_workers > 1 and len(measurements_collection) > 1:
            chunk_indices = np.array_split(np.arange(len(measurements_collection)), n_workers)
            with Pool(n_workers) as pool:
                results = [pool.apply_async(_accumulate_tracks, kwds={
                    'fitter': self.fitter,
                    'measurements_collection': [measurements_collection[i] for i in indices],
                    'seeds_collection': [seeds_collection[i] for i in indices],
                    'fit_options': fit_options,
                    'indexed_aligned_duts': indexed_aligned_duts,
                    'alignment_mask': alignment_mask}) for indices in chunk_indices if len(indices)]
                alignment_sums = AlignmentSums(alignment_dof=n_alignment_parameters * len(indexed_aligned_duts))
                for result in results:  # Merge sums from all cores in results
                    alignment_sums.merge(result.get())
        else:
            alignment_sums = _accumulate_tracks(
                fitter=self.fitter,
                measurements_collection=measurements_collection,
                seeds_collection=seeds_collection,
                fit_options=fit_options,
                indexed_aligned_duts=indexed_aligned_duts,
                alignment_mask=alignment_mask,
                progress_bar=True)
        if alignment_sums.n_failed_fits:
            logging.warning('Track fit failed for %d tracks', alignment_sums.n_failed_fits)
        if alignment_sums.n_tracks_without_alignment_dof:
            logging.info('%d tracks without measurement on aligned DUTs', alignment_sums.n_tracks_without_alignment_dof)
        if alignment_sums.num_tracks == 0:
            logging.warning('No track contributes to the alignment')
        return alignment_sums

    def update_alignment_parameters(self, measurements_collection, seeds_collection, fit_options, aligned_duts, transform_updater, alignment_result, alignment_mask=None, fail_on_singular_matrix=True, n_workers=1):
        ''' Fits all tracks, calculates the change of the alignment parameters and updates the DUT transformations.

        The result of the calculation is stored in alignment_result.
        '''
        # Assign alignment slot to the aligned DUTs
        indexed_aligned_duts = {dut_index: slot for slot, dut_index in enumerate(aligned_duts)}
        alignment_mask = get_alignment_mask(None) if alignment_mask is None else np.asarray(alignment_mask, dtype=bool)
        alignment_result.alignment_dof = n_alignment_parameters * len(indexed_aligned_duts)

        alignment_sums = self.accumulate(
            measurements_collection=measurements_collection,
            seeds_collection=seeds_collection,
            fit_options=fit_options,
            indexed_aligned_duts=indexed_aligned_duts,
            alignment_mask=alignment_mask,
            n_workers=n_workers)
        alignment_result.chi2 = alignment_sums.chi2
        alignment_result.measurement_dim = alignment_sums.measurement_dim
        alignment_result.num_tracks = alignment_sums.num_tracks
        alignment_result.average_chi2_ndf = alignment_sums.average_chi2_ndf

        # DUTs without constraint from tracks and masked parameters are kept fixed
        free_parameters = np.tile(alignment_mask, len(indexed_aligned_duts))
        for slot, dut_index in enumerate(aligned_duts):
            block = alignment_sums.sum_chi2_second_derivative[slot * n_alignment_parameters:(slot + 1) * n_alignment_parameters, slot * n_alignment_parameters:(slot + 1) * n_alignment_parameters]
            if not np.any(block):
                logging.warning('DUT%d is not constrained by any track and is not aligned', dut_index)
                free_parameters[slot * n_alignment_parameters:(slot + 1) * n_alignment_parameters] = False

        alignment_result.delta_alignment_parameters, alignment_result.alignment_covariance, alignment_result.delta_chi2 = solve_alignment_parameters(
            sum_chi2_derivative=alignment_sums.sum_chi2_derivative,
            sum_chi2_second_derivative=alignment_sums.sum_chi2_second_derivative,
            free_parameters=free_parameters,
            fail_on_singular_matrix=fail_on_singular_matrix)
        logging.info('Delta chi2 = %.4g', alignment_result.delta_chi2)

        apply_alignment_parameters(
            telescope=fit_options.telescope,
            aligned_duts=aligned_duts,
            delta_alignment_parameters=alignment_result.delta_alignment_parameters,
            transform_updater=transform_updater)
        return alignment_result

    def align(self, measurements_collection, seeds_collection, alignment_options):
        ''' Iterative alignment of the DUTs.

        Parameters
        ----------
        measurements_collection : list
            Measurements of every track.
        seeds_collection : list
            Seed of every track.
        alignment_options : AlignmentOptions
            Options of the alignment.

        Returns
        -------
        AlignmentResult
        '''
        telescope = alignment_options.fit_options.telescope
        for dut_index in alignment_options.aligned_duts:
            if dut_index not in telescope:
                raise ValueError("DUT%d is not part of the telescope." % dut_index)
        if len(measurements_collection) != len(seeds_collection):
            raise ValueError("Number of measurement collections and seeds differs.")

        logging.info('=== Alignment of %d DUTs with %d tracks: %s ===', len(alignment_options.aligned_duts), len(measurements_collection), ", ".join(telescope[dut_index].name for dut_index in alignment_options.aligned_duts))
        logging.info('Max number of iterations: %d', alignment_options.max_iterations)
        if alignment_options.output_alignment_file:
            save_configuration_dict(output_file=alignment_options.output_alignment_file, table_name="alignment_options", dictionary=alignment_options.to_dict(), mode="w")

        alignment_result = AlignmentResult()
        convergence_monitor = ConvergenceMonitor(
            average_chi2_ndf_cut_off=alignment_options.average_chi2_ndf_cut_off,
            delta_average_chi2_ndf_cut_off=alignment_options.delta_average_chi2_ndf_cut_off)
        for iteration in range(alignment_options.max_iterations):
            alignment_mask = alignment_options.get_alignment_mask(iteration)
            logging.info('== Alignment iteration %d: aligning %s ==', iteration, ", ".join(name for name, aligned in zip(alignment_parameters, alignment_mask) if aligned))
            alignment_result.n_iterations = iteration + 1
            try:
                self.update_alignment_parameters(
                    measurements_collection=measurements_collection,
                    seeds_collection=seeds_collection,
                    fit_options=alignment_options.fit_options,
                    aligned_duts=alignment_options.aligned_duts,
                    transform_updater=alignment_options.transform_updater,
                    alignment_result=alignment_result,
                    alignment_mask=alignment_mask,
                    fail_on_singular_matrix=alignment_options.fail_on_singular_matrix,
                    n_workers=alignment_options.n_workers)
            except AlignmentParametersUpdateError as e:
                logging.error('Update alignment parameters failed: %s', e)
                alignment_result.status = AlignmentStatus.FAILED
                alignment_result.failure_reason = UPDATE_FAILURE
                break
            except SingularMatrixError as e:
                logging.error('Update alignment parameters failed: %s', e)
                alignment_result.status = AlignmentStatus.FAILED
                alignment_result.failure_reason = SINGULAR_MATRIX
                break
            alignment_result.history.append(alignment_result.average_chi2_ndf)
            logging.info('Iteration %d: %d tracks, total chi2 = %.4g, total measurement dim = %d', iteration, alignment_result.num_tracks, alignment_result.chi2, alignment_result.measurement_dim)
            logging.info('Average chi2/ndf = %.4g', alignment_result.average_chi2_ndf)
            if alignment_options.output_alignment_file:
                store_alignment_iteration(
                    output_file=alignment_options.output_alignment_file,
                    iteration=iteration,
                    telescope=telescope,
                    aligned_duts=alignment_options.aligned_duts,
                    alignment_result=alignment_result)
            if convergence_monitor.update(alignment_result.average_chi2_ndf):
                alignment_result.status = AlignmentStatus.CONVERGED
                break

        if alignment_result.status == AlignmentStatus.RUNNING:
            logging.error('Alignment is not converged')
            alignment_result.status = AlignmentStatus.FAILED
            alignment_result.failure_reason = DID_NOT_CONVERGE

        # Final aligned parameters
        for dut_index in alignment_options.aligned_duts:
            dut = telescope[dut_index]
            alignment_result.aligned_parameters[dut_index] = dut.transform
            logging.info('%s has aligned position (x, y, z) = (%.3f, %.3f, %.3f) um and rotation (alpha, beta, gamma) = (%.6f, %.6f, %.6f) rad', dut.name, dut.translation_x, dut.translation_y, dut.translation_z, dut.rotation_alpha, dut.rotation_beta, dut.rotation_gamma)
        return alignment_result
