''' Helper functions for the unit tests and examples.
'''
import os

from track_alignment.telescope.telescope import Telescope


def create_folder(path):
    if not os.path.exists(path):
        os.makedirs(path)


def create_telescope(n_duts=6, distance=20000.0, dut_type="Mimosa26", material_budget=None, **kwargs):
    ''' Creates a telescope with equidistant planes perpendicular to the beam.

    Parameters
    ----------
    n_duts : int
        Number of DUTs. The DUT indices are 0 .. n_duts - 1.
    distance : float
        Distance between the planes along z in um.
    dut_type : string, class
        DUT type (see telescope.dut).
    material_budget : float
        Material budget of each DUT.
    kwargs
        Additional DUT attributes (e.g., pixel sizes of a RectangularPixelDut).

    Returns
    -------
    Telescope
    '''
    telescope = Telescope()
    for dut_index in range(n_duts):
        telescope.add_dut(
            dut_type=dut_type,
            dut_id=dut_index,
            translation_x=0.0,
            translation_y=0.0,
            translation_z=dut_index * distance,
            rotation_alpha=0.0,
            rotation_beta=0.0,
            rotation_gamma=0.0,
            material_budget=material_budget,
            **kwargs)
    return telescope


def copy_telescope(telescope):
    ''' Copy of a telescope with new DUT objects. Changing the copy does not change the original.
    '''
    telescope_copy = Telescope()
    for dut_index in telescope.dut_indices:
        dut = telescope[dut_index]
        telescope_copy[dut_index] = dut.from_dut(dut)
    return telescope_copy


def shift_dut(telescope, dut_index, **kwargs):
    ''' Adds offsets to the alignment parameters of a DUT, e.g. shift_dut(telescope, 2, translation_x=50.0).
    '''
    dut = telescope[dut_index]
    for name, value in kwargs.items():
        setattr(dut, name, getattr(dut, name) + value)
    return dut
