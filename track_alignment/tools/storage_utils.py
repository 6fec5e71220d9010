import logging
import time

import numpy as np
import tables as tb

from track_alignment import __version__ as track_alignment_version


alignment_descr = np.dtype([('iteration', np.uint32),
                            ('translation_x', np.float64),
                            ('translation_y', np.float64),
                            ('translation_z', np.float64),
                            ('rotation_alpha', np.float64),
                            ('rotation_beta', np.float64),
                            ('rotation_gamma', np.float64),
                            ('translation_x_err', np.float64),
                            ('translation_y_err', np.float64),
                            ('translation_z_err', np.float64),
                            ('rotation_alpha_err', np.float64),
                            ('rotation_beta_err', np.float64),
                            ('rotation_gamma_err', np.float64),
                            ('translation_x_delta', np.float64),
                            ('translation_y_delta', np.float64),
                            ('translation_z_delta', np.float64),
                            ('rotation_alpha_delta', np.float64),
                            ('rotation_beta_delta', np.float64),
                            ('rotation_gamma_delta', np.float64)])

alignment_chi2_descr = np.dtype([('iteration', np.uint32),
                                 ('chi2', np.float64),
                                 ('measurement_dim', np.uint64),
                                 ('average_chi2_ndf', np.float64),
                                 ('delta_chi2', np.float64),
                                 ('num_tracks', np.uint64),
                                 ('alignment_dof', np.uint64)])


class NameValue(tb.IsDescription):
    name = tb.StringCol(256, pos=0)
    value = tb.StringCol(32 * 1024, pos=1)


def save_configuration_dict(output_file, table_name, dictionary, group_name="configuration", date_created=None, **kwargs):
    '''Stores any configuration dictionary to HDF5 file.

    Parameters
    ----------
    output_file : string, file
        Filename of the output pytables file or file object.
    table_name : str
        The name will be used as table name.
    dictionary : dict
        A dictionary with key/value pairs.
    date_created : float, time.struct_time
        If None (default), the local time is used.
    '''
    def save_conf():
        try:
            h5_file.remove_node(where="/%s" % group_name, name=table_name)
        except tb.NodeError:
            pass
        try:
            configuration_group = h5_file.create_group(where="/", name=group_name)
        except tb.NodeError:
            configuration_group = h5_file.get_node("/%s" % group_name)

        scan_param_table = h5_file.create_table(where=configuration_group, name=table_name, description=NameValue, title=table_name)
        row_scan_param = scan_param_table.row
        for key, value in dictionary.items():
            row_scan_param['name'] = key
            row_scan_param['value'] = str(value)
            row_scan_param.append()
        if isinstance(date_created, float):
            scan_param_table.attrs.date_created = time.asctime(time.localtime(date_created))
        elif isinstance(date_created, time.struct_time):
            scan_param_table.attrs.date_created = time.asctime(date_created)
        else:
            scan_param_table.attrs.date_created = time.asctime()
        scan_param_table.attrs.track_alignment_version = track_alignment_version
        scan_param_table.flush()

    if isinstance(output_file, tb.file.File):
        h5_file = output_file
        save_conf()
    else:
        mode = kwargs.pop("mode", "a")
        with tb.open_file(output_file, mode=mode, **kwargs) as h5_file:
            save_conf()


def load_configuration_dict(input_file, table_name, group_name="configuration"):
    ''' Reads a configuration dictionary written by save_configuration_dict(). All values are strings.
    '''
    with tb.open_file(input_file, mode="r") as h5_file:
        table = h5_file.get_node("/%s/%s" % (group_name, table_name))
        return {row['name'].decode(): row['value'].decode() for row in table.read()}


def _append_table(h5_file, name, data, title=None):
    try:  # Check if table exists already, then append data
        table = h5_file.get_node('/%s' % name)
    except tb.NoSuchNodeError:  # Table does not exist, thus create new
        table = h5_file.create_table(
            where=h5_file.root,
            name=name,
            description=data.dtype,
            title=name if title is None else title,
            filters=tb.Filters(
                complib='blosc',
                complevel=5,
                fletcher32=False))
    table.append(data)
    table.flush()
    return table


def store_alignment_iteration(output_file, iteration, telescope, aligned_duts, alignment_result):
    ''' Appends the alignment parameters of the aligned DUTs (table Alignment_DUT<index>) and the chi2 summary
    (table AlignmentChi2) of one iteration to a HDF5 file.

    Parameters
    ----------
    output_file : string
        Filename of the output pytables file.
    iteration : int
        Iteration index.
    telescope : Telescope
        Telescope with the updated DUT positions.
    aligned_duts : list
        DUT indices in the order of the alignment slots.
    alignment_result : AlignmentResult
        Result of the iteration.
    '''
    with tb.open_file(output_file, mode='a') as out_file_h5:
        for slot, dut_index in enumerate(aligned_duts):
            alignment_values = np.zeros(shape=1, dtype=alignment_descr)
            alignment_values['iteration'] = iteration
            dut = telescope[dut_index]
            deltas = alignment_result.delta_alignment_parameters[slot * 6:(slot + 1) * 6]
            errors = np.sqrt(np.abs(np.diag(alignment_result.alignment_covariance)[slot * 6:(slot + 1) * 6]))
            for i, name in enumerate(["translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma"]):
                alignment_values[name] = getattr(dut, name)
                alignment_values[name + '_err'] = errors[i]
                alignment_values[name + '_delta'] = deltas[i]
            table = _append_table(h5_file=out_file_h5, name='Alignment_DUT%i' % dut_index, data=alignment_values)
            table.attrs.dut_name = dut.name

        chi2_values = np.zeros(shape=1, dtype=alignment_chi2_descr)
        chi2_values['iteration'] = iteration
        chi2_values['chi2'] = alignment_result.chi2
        chi2_values['measurement_dim'] = alignment_result.measurement_dim
        chi2_values['average_chi2_ndf'] = alignment_result.average_chi2_ndf
        chi2_values['delta_chi2'] = alignment_result.delta_chi2
        chi2_values['num_tracks'] = alignment_result.num_tracks
        chi2_values['alignment_dof'] = alignment_result.alignment_dof
        _append_table(h5_file=out_file_h5, name='AlignmentChi2', data=chi2_values, title='Alignment chi2')
    logging.debug('Stored alignment iteration %d in %s', iteration, output_file)
