''' Example script to align a simulated beam telescope.

    The telescope consists of 6 Mimosa26 planes with 15 cm clearance between the
    planes (EUDET type telescope). The inner 4 planes are misaligned in the simulation,
    the outer most planes define the reference system and are not aligned.

    The tracks are simulated with multiple scattering in the planes (5 GeV electrons).
    The measurements have the binary resolution of the Mimosa26 (18.4 um / sqrt(12)).

    In the first iterations only the translations in x / y are aligned, afterwards the
    rotation around the beam axis is aligned in addition.
'''

import logging
import os

from track_alignment import dut_alignment
from track_alignment.alignment_engine import get_alignment_mask
from track_alignment.telescope.telescope import Telescope
from track_alignment.tools import kalman, test_tools
from track_alignment.tools.simulate_data import SimulateData

logging.basicConfig(level=logging.INFO,
                    format="%(asctime)s - %(name)s - ""[%(levelname)-8s] (%(threadName)-10s) %(message)s")


def run_analysis(n_tracks, output_folder='simulation'):
    # Create output subfolder where all output data is stored
    test_tools.create_folder(output_folder)
    initial_configuration = os.path.join(output_folder, 'telescope.yaml')
    aligned_configuration = os.path.join(output_folder, 'telescope_aligned.yaml')

    # Nominal geometry, the material budget is the sensor thickness (50 um silicon) / radiation length
    telescope = test_tools.create_telescope(n_duts=6, distance=150000.0, dut_type="Mimosa26", material_budget=50.0 / 93700.0)
    telescope.save_configuration(initial_configuration)

    # True geometry: the inner planes are shifted and rotated around the beam axis
    true_telescope = test_tools.copy_telescope(telescope)
    test_tools.shift_dut(true_telescope, 1, translation_x=120.0, translation_y=-40.0, rotation_gamma=0.003)
    test_tools.shift_dut(true_telescope, 2, translation_x=-60.0, translation_y=85.0, rotation_gamma=-0.002)
    test_tools.shift_dut(true_telescope, 3, translation_x=30.0, translation_y=20.0, rotation_gamma=0.001)
    test_tools.shift_dut(true_telescope, 4, translation_x=-90.0, translation_y=-70.0, rotation_gamma=-0.004)

    # Start simulator with random seed 0
    sim = SimulateData(random_seed=0)
    sim.beam_momentum = 5000  # MeV
    sim.beam_position_sigma = (4000, 2000)  # in x, y
    sim.beam_angle_sigma = 1  # mRad
    sim.multiple_scattering = True
    sim.dut_resolution = telescope[0].resolution
    sim.use_dut_limits = True
    measurements_collection, seeds_collection = sim.create_data(telescope=true_telescope, n_tracks=n_tracks)

    # The track fit uses the nominal geometry which is updated by the alignment
    telescope = Telescope(initial_configuration)
    fit_options = kalman.FitOptions(telescope=telescope, momentum=sim.beam_momentum, particle_mass=0.511)
    alignment_options = dut_alignment.AlignmentOptions.from_configuration({
        "ALIGNMENT": {
            "aligned_duts": [1, 2, 3, 4],
            "average_chi2_ndf_cut_off": 0.05,
            "delta_average_chi2_ndf_cut_off": (2, 1e-3),
            "max_iterations": 10,
            "iteration_masks": {0: ["translation_x", "translation_y"], 1: ["translation_x", "translation_y"]},
            "n_workers": 1,
            "output_alignment_file": os.path.join(output_folder, 'Alignment.h5')}},
        fit_options=fit_options)
    for iteration in range(2, alignment_options.max_iterations):
        alignment_options.iteration_masks[iteration] = get_alignment_mask(["translation_x", "translation_y", "rotation_gamma"])

    alignment_result = dut_alignment.Alignment().align(
        measurements_collection=measurements_collection,
        seeds_collection=seeds_collection,
        alignment_options=alignment_options)

    for slot, dut_index in enumerate(alignment_options.aligned_duts):
        dut, true_dut = telescope[dut_index], true_telescope[dut_index]
        errors = alignment_result.alignment_errors(slot)
        logging.info('%s: x = %.2f +- %.2f um (true %.2f um), y = %.2f +- %.2f um (true %.2f um), gamma = %.5f +- %.5f rad (true %.5f rad)',
                     dut.name, dut.translation_x, errors[0], true_dut.translation_x, dut.translation_y, errors[1], true_dut.translation_y, dut.rotation_gamma, errors[5], true_dut.rotation_gamma)

    telescope.save_configuration(aligned_configuration)
    return alignment_result, telescope, true_telescope


if __name__ == '__main__':
    run_analysis(n_tracks=10000)
