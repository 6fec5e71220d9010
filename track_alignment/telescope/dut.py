import numpy as np

from track_alignment.tools import geometry_utils


class Dut(object):
    ''' DUT base class. A DUT is a plane with a local (u, v, w) system, w being the plane normal.

    The position of the DUT is given by the translation of the plane origin (in um) and the
    rotation angles alpha, beta and gamma (in rad) around the global x, y and z axis.
    '''

    # List of member variables that define the DUT (e.g., in the telescope configuration file).
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget"]

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, material_budget=None):
        self.name = name  # string
        self.translation_x = translation_x  # in um
        self.translation_y = translation_y  # in um
        self.translation_z = translation_z  # in um
        self.rotation_alpha = rotation_alpha  # in rad
        self.rotation_beta = rotation_beta  # in rad
        self.rotation_gamma = rotation_gamma  # in rad
        self.material_budget = 0.0 if material_budget is None else material_budget  # the material budget is defined as the thickness devided by the radiation length

    def __str__(self):
        return ("DUT %s: " % self.__class__.__name__) + ", ".join([(name + ": " + str(getattr(self, name))) for name in self.dut_attributes])

    # Various properties of the DUT; check for correct input type and cast to proper type.
    @property
    def name(self):
        return self._name

    @name.setter
    def name(self, name):
        self._name = str(name)

    @property
    def translation_x(self):
        return self._translation_x

    @translation_x.setter
    def translation_x(self, translation_x):
        self._translation_x = float(translation_x)

    @property
    def translation_y(self):
        return self._translation_y

    @translation_y.setter
    def translation_y(self, translation_y):
        self._translation_y = float(translation_y)

    @property
    def translation_z(self):
        return self._translation_z

    @translation_z.setter
    def translation_z(self, translation_z):
        self._translation_z = float(translation_z)

    @property
    def rotation_alpha(self):
        return self._rotation_alpha

    @rotation_alpha.setter
    def rotation_alpha(self, rotation_alpha):
        self._rotation_alpha = float(rotation_alpha)

    @property
    def rotation_beta(self):
        return self._rotation_beta

    @rotation_beta.setter
    def rotation_beta(self, rotation_beta):
        self._rotation_beta = float(rotation_beta)

    @property
    def rotation_gamma(self):
        return self._rotation_gamma

    @rotation_gamma.setter
    def rotation_gamma(self, rotation_gamma):
        self._rotation_gamma = float(rotation_gamma)

    @property
    def material_budget(self):
        return self._material_budget

    @material_budget.setter
    def material_budget(self, material_budget):
        if float(material_budget) < 0.0:
            raise ValueError("Material budget must not be negative.")
        self._material_budget = float(material_budget)

    @property
    def position(self):
        ''' Position of the plane origin in the global system.
        '''
        return np.array([self.translation_x, self.translation_y, self.translation_z], dtype=np.float64)

    @property
    def rotation_matrix(self):
        return geometry_utils.rotation_matrix(alpha=self.rotation_alpha, beta=self.rotation_beta, gamma=self.rotation_gamma)

    @property
    def normal(self):
        return self.rotation_matrix[:, 2]

    @property
    def transform(self):
        ''' Transformation matrix (4 x 4) from the local system of the DUT into the global system.
        '''
        return geometry_utils.local_to_global_transformation_matrix(
            x=self.translation_x,
            y=self.translation_y,
            z=self.translation_z,
            alpha=self.rotation_alpha,
            beta=self.rotation_beta,
            gamma=self.rotation_gamma)

    @transform.setter
    def transform(self, transform):
        transform = np.asarray(transform, dtype=np.float64)
        if not np.all(np.isfinite(transform)):
            raise ValueError("Transformation matrix contains non-finite values.")
        if not np.allclose(transform[3], [0.0, 0.0, 0.0, 1.0]):
            raise ValueError("Transformation matrix is not a rigid transformation.")
        # raises ValueError if not a rotation
        translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma = geometry_utils.decompose_transformation_matrix(transform)
        self.translation_x = translation_x
        self.translation_y = translation_y
        self.translation_z = translation_z
        self.rotation_alpha = rotation_alpha
        self.rotation_beta = rotation_beta
        self.rotation_gamma = rotation_gamma

    @property
    def alignment_parameters(self):
        return np.array([self.translation_x, self.translation_y, self.translation_z, self.rotation_alpha, self.rotation_beta, self.rotation_gamma], dtype=np.float64)

    # DUT methods
    @classmethod
    def from_dut(cls, dut, **kwargs):
        ''' Get new DUT from existing DUT. Copy all properties to new DUT.
        '''
        init_variables = list(set(cls.dut_attributes) & set(dut.dut_attributes))
        init_dict = {key: getattr(dut, key) for key in init_variables}
        init_dict.update(kwargs)
        return cls(**init_dict)

    def local_to_global_position(self, x, y, z=None):
        ''' Transform local position to global position.
        '''
        if isinstance(x, (list, tuple)) or isinstance(y, (list, tuple)):
            x = np.array(x, dtype=np.float64)
            y = np.array(y, dtype=np.float64)
        if z is None:
            z = np.zeros_like(x, dtype=np.float64)
        elif isinstance(z, (list, tuple)):
            z = np.array(z, dtype=np.float64)
        return geometry_utils.apply_transformation_matrix(
            x=x,
            y=y,
            z=z,
            transformation_matrix=self.transform)

    def global_to_local_position(self, x, y, z):
        ''' Transform global position to local position.
        '''
        if isinstance(x, (list, tuple)) or isinstance(y, (list, tuple)) or isinstance(z, (list, tuple)):
            x = np.array(x, dtype=np.float64)
            y = np.array(y, dtype=np.float64)
            z = np.array(z, dtype=np.float64)
        transformation_matrix = geometry_utils.global_to_local_transformation_matrix(
            x=self.translation_x,
            y=self.translation_y,
            z=self.translation_z,
            alpha=self.rotation_alpha,
            beta=self.rotation_beta,
            gamma=self.rotation_gamma)
        return geometry_utils.apply_transformation_matrix(
            x=x,
            y=y,
            z=z,
            transformation_matrix=transformation_matrix)

    def local_to_global_direction(self, slope_u, slope_v):
        ''' Unit direction vector in the global system of a track with local slopes du/dw and dv/dw.
        '''
        direction = np.dot(self.rotation_matrix, np.array([slope_u, slope_v, 1.0], dtype=np.float64))
        return direction / np.linalg.norm(direction)

    def global_to_local_direction(self, direction):
        ''' Local slopes (du/dw, dv/dw) of a track with a direction given in the global system.
        '''
        local_direction = np.dot(self.rotation_matrix.T, np.asarray(direction, dtype=np.float64))
        if local_direction[2] == 0.0:
            raise ValueError("Track direction is parallel to the plane of %s." % self.name)
        return local_direction[0] / local_direction[2], local_direction[1] / local_direction[2]

    def intersection(self, position, direction):
        ''' Intersection of a straight line with the DUT plane.

        Parameters
        ----------
        position : array
            A point (x, y and z) on the line.
        direction : array
            The direction vector of the line.

        Returns
        -------
        Array with shape (3, ) with the intersection point in the global system.
        '''
        return geometry_utils.get_line_intersections_with_plane(
            line_origins=np.asarray(position, dtype=np.float64),
            line_directions=np.asarray(direction, dtype=np.float64),
            position_plane=self.position,
            normal_plane=self.normal)[0]

    def alignment_to_local_position_derivative(self, position, direction):
        ''' Derivative of the local intersection point (u, v) of a track with respect to the
        alignment parameters of the DUT (translation x, y, z and rotation alpha, beta, gamma).

        The track is kept fixed in the global system while the plane is moved. For a plane
        perpendicular to the beam, du/dx = -1 and du/dz = -du/dw (see also V. Karimaki et al.,
        "Sensor alignment by tracks", CMS CR 2003/022).

        Parameters
        ----------
        position : array
            Intersection point of the track with the plane (global system).
        direction : array
            Track direction (global system).

        Returns
        -------
        Array with shape (2, 6).
        '''
        position = np.asarray(position, dtype=np.float64)
        direction = np.asarray(direction, dtype=np.float64)
        rotation_matrix = self.rotation_matrix
        normal = rotation_matrix[:, 2]
        direction_dot_normal = np.dot(direction, normal)
        if direction_dot_normal == 0.0:
            raise ValueError("Track direction is parallel to the plane of %s." % self.name)
        derivative = np.zeros(shape=(2, 6), dtype=np.float64)
        # plane translation
        d_position = np.outer(direction, normal) / direction_dot_normal - np.eye(3)
        derivative[:, :3] = np.dot(rotation_matrix.T, d_position)[:2]
        # plane rotation, the intersection point moves along the track
        offset = position - self.position
        for i, d_rotation_matrix in enumerate(geometry_utils.rotation_matrix_derivatives(alpha=self.rotation_alpha, beta=self.rotation_beta, gamma=self.rotation_gamma)):
            d_path_length = np.dot(-offset, d_rotation_matrix[:, 2]) / direction_dot_normal
            d_local = np.dot(d_rotation_matrix.T, offset) + np.dot(rotation_matrix.T, d_path_length * direction)
            derivative[:, 3 + i] = d_local[:2]
        return derivative


class RectangularPixelDut(Dut):
    ''' DUT with rectangular pixels. The pixel matrix is centered around the local origin.
    '''
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget", "column_size", "row_size", "n_columns", "n_rows"]

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, column_size, row_size, n_columns, n_rows, material_budget=None):
        super(RectangularPixelDut, self).__init__(name=name, material_budget=material_budget, translation_x=translation_x, translation_y=translation_y, translation_z=translation_z, rotation_alpha=rotation_alpha, rotation_beta=rotation_beta, rotation_gamma=rotation_gamma)
        self.column_size = column_size
        self.row_size = row_size
        self.n_columns = n_columns
        self.n_rows = n_rows

    @property
    def column_size(self):
        return self._column_size

    @column_size.setter
    def column_size(self, column_size):
        self._column_size = float(column_size)

    @property
    def row_size(self):
        return self._row_size

    @row_size.setter
    def row_size(self, row_size):
        self._row_size = float(row_size)

    @property
    def pixel_size(self):
        return (self.column_size, self.row_size)

    @property
    def n_columns(self):
        return self._n_columns

    @n_columns.setter
    def n_columns(self, n_columns):
        self._n_columns = int(n_columns)

    @property
    def n_rows(self):
        return self._n_rows

    @n_rows.setter
    def n_rows(self, n_rows):
        self._n_rows = int(n_rows)

    @property
    def resolution(self):
        ''' Binary resolution (pitch / sqrt(12)) in local u and v.
        '''
        return (self.column_size / np.sqrt(12.0), self.row_size / np.sqrt(12.0))

    def x_extent(self):
        ''' Size of the DUT in local u.
        '''
        return (-0.5 * self.n_columns * self.column_size, 0.5 * self.n_columns * self.column_size)

    def y_extent(self):
        ''' Size of the DUT in local v.
        '''
        return (-0.5 * self.n_rows * self.row_size, 0.5 * self.n_rows * self.row_size)

    def is_inside(self, x, y):
        ''' Check if local positions are inside the active area.
        '''
        x_min, x_max = self.x_extent()
        y_min, y_max = self.y_extent()
        return np.logical_and(np.logical_and(x >= x_min, x <= x_max), np.logical_and(y >= y_min, y <= y_max))


class FEI4(RectangularPixelDut):
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget"]

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, material_budget=None):
        super(FEI4, self).__init__(name=name, translation_x=translation_x, translation_y=translation_y, translation_z=translation_z, rotation_alpha=rotation_alpha, rotation_beta=rotation_beta, rotation_gamma=rotation_gamma, material_budget=material_budget, column_size=250.0, row_size=50.0, n_columns=80, n_rows=336)


class Mimosa26(RectangularPixelDut):
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget"]

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, material_budget=None):
        super(Mimosa26, self).__init__(name=name, translation_x=translation_x, translation_y=translation_y, translation_z=translation_z, rotation_alpha=rotation_alpha, rotation_beta=rotation_beta, rotation_gamma=rotation_gamma, material_budget=material_budget, column_size=18.4, row_size=18.4, n_columns=1152, n_rows=576)
