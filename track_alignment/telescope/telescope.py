import logging
import os
import io
from collections import OrderedDict
from inspect import isclass
import importlib

import numpy as np
from yaml import safe_load, safe_dump

from track_alignment.telescope.dut import Dut


def open_configuration(configuration):
    ''' Parse a configuration given as file name, YAML string, open file or dict.

    Returns
    -------
    Configuration dict.
    '''
    configuration_dict = {}
    if not configuration:
        pass
    elif isinstance(configuration, str):  # parse the first YAML document in a stream
        if os.path.isfile(os.path.abspath(configuration)):
            logging.info('Loading configuration from file %s', os.path.abspath(configuration))
            with open(os.path.abspath(configuration), mode='r') as f:
                configuration_dict.update(safe_load(f))
        else:  # YAML string
            loaded = safe_load(configuration)
            if not isinstance(loaded, dict):
                raise ValueError("Configuration cannot be parsed.")
            configuration_dict.update(loaded)
    elif isinstance(configuration, io.IOBase):  # parse the first YAML document in a stream
        logging.info('Loading configuration from file %s', os.path.abspath(configuration.name))
        configuration_dict.update(safe_load(configuration))
    elif isinstance(configuration, (dict, OrderedDict)):  # conf is already a dict
        configuration_dict.update(configuration)
    else:
        raise ValueError("Configuration cannot be parsed.")
    return configuration_dict


def update_dut_transform(dut_index, telescope, transform):
    ''' Default transform updater. Sets the transformation matrix (4 x 4) of a DUT.

    Parameters
    ----------
    dut_index : int
        Index of the DUT in the telescope.
    telescope : Telescope
        Geometry store.
    transform : array
        New local to global transformation matrix.

    Returns
    -------
    True if the transformation was applied, False otherwise.
    '''
    try:
        telescope[dut_index].transform = transform
    except KeyError:
        logging.error('DUT%d is not part of the telescope', dut_index)
        return False
    except ValueError as e:
        logging.error('Cannot update transformation of DUT%d: %s', dut_index, e)
        return False
    return True


class Telescope(object):
    ''' Store of DUTs (planes) which are identified by an integer DUT index.
    '''

    def __init__(self, configuration_file=None):
        self.dut = {}
        self.configuration_file = None
        if configuration_file is not None:
            self.load_configuration(configuration_file)

    def __len__(self):
        return len(self.dut)

    def __getitem__(self, key):
        return self.dut[key]

    def __setitem__(self, key, value):
        if not isinstance(value, Dut):
            raise ValueError("Must be DUT.")
        self.dut[key] = value

    def __contains__(self, key):
        return key in self.dut

    def __iter__(self):
        for sorted_key in sorted(self.dut.keys()):
            yield self.dut[sorted_key]

    def __str__(self):
        return "\n".join([str(item) for item in self])

    @property
    def dut_names(self):
        return [item.name for item in self]

    @property
    def dut_indices(self):
        return sorted(self.dut.keys())

    @property
    def z_sorted_dut_indices(self):
        ''' DUT indices in the order of the DUT positions along the beam (z).
        '''
        dut_indices = self.dut_indices
        return [dut_indices[i] for i in np.argsort([self.dut[dut_index].translation_z for dut_index in dut_indices], kind='stable')]

    def load_configuration(self, configuration_file=None):
        ''' Load DUTs from a YAML configuration (file, YAML string or dict).

        The configuration has the layout:

        TELESCOPE:
          DUT:
            0:
              dut_type: Mimosa26
              translation_z: 0.0
              ...
        '''
        if configuration_file:
            if isinstance(configuration_file, str) and os.path.isfile(os.path.abspath(configuration_file)):
                self.configuration_file = configuration_file
        else:
            configuration_file = self.configuration_file
        if not configuration_file:
            raise ValueError("No valid configuration file given.")

        configuration = open_configuration(configuration_file)
        if "TELESCOPE" not in configuration:
            raise ValueError("Configuration has no TELESCOPE section.")
        if configuration["TELESCOPE"] and "DUT" in configuration["TELESCOPE"]:
            for dut_id, dut_configuration in (configuration["TELESCOPE"]["DUT"] or {}).items():
                dut_configuration = dict(dut_configuration)
                dut_type = dut_configuration.pop("dut_type", "RectangularPixelDut")
                self.add_dut(dut_type=dut_type, dut_id=dut_id, **dut_configuration)

    def save_configuration(self, configuration_file=None, keep_others=False):
        ''' Write DUTs to a YAML configuration file.
        '''
        if configuration_file:
            self.configuration_file = configuration_file
        else:
            configuration_file = self.configuration_file

        if configuration_file:
            if keep_others and os.path.isfile(os.path.abspath(configuration_file)):
                with open(os.path.abspath(configuration_file), mode='r') as f:
                    configuration = safe_load(f)
            else:
                configuration = {}
            # create Telescope configuration
            if 'TELESCOPE' not in configuration:
                configuration["TELESCOPE"] = {}
            # overwrite all existing DUTs
            configuration["TELESCOPE"]["DUT"] = {}
            for dut_id, dut in self.dut.items():
                dut_configuration = {name: getattr(dut, name) for name in dut.dut_attributes}
                dut_configuration["dut_type"] = dut.__class__.__name__
                configuration["TELESCOPE"]["DUT"][dut_id] = dut_configuration
            with open(configuration_file, mode='w') as f:
                safe_dump(configuration, f, default_flow_style=False)
        else:
            raise ValueError("No valid configuration file given.")

    def add_dut(self, dut_type, dut_id, **kwargs):
        if isinstance(dut_id, bool) or not isinstance(dut_id, (int, np.integer)):
            raise ValueError("DUT ID has to be an integer.")
        dut_id = int(dut_id)
        if "name" not in kwargs:
            kwargs["name"] = "DUT%d" % dut_id
        if isinstance(dut_type, str):
            m = importlib.import_module("track_alignment.telescope.dut")
            # get the class, will raise AttributeError if class cannot be found
            c = getattr(m, dut_type)
            self.dut[dut_id] = c(**kwargs)
        elif isclass(dut_type):
            # instantiate the class
            self.dut[dut_id] = dut_type(**kwargs)
        else:
            raise ValueError("Unknown DUT type.")
        return self.dut[dut_id]
