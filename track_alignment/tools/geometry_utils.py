''' Helper functions for geometrical operations (rotations, rigid transformations, line-plane intersections).
'''
import logging

import numpy as np


def get_line_intersections_with_plane(line_origins, line_directions, position_plane, normal_plane):
    ''' Calculates the intersection of n lines with one plane.

    If there is no intersection point (line is parallel to plane or the line is
    in the plane) the intersection point is set to nan.

    Parameters
    ----------
    line_origins : array
        A point (x, y and z) on the line for each of the n lines.
    line_directions : array
        The direction vector of the line for n lines.
    position_plane : array
        A array (x, y and z) to the plane.
    normal_plane : array
        The normal vector (x, y and z) of the plane.

    Returns
    -------
    Array with shape (n, 3) with the intersection point.
    '''
    line_origins = np.atleast_2d(line_origins)
    line_directions = np.atleast_2d(line_directions)
    offsets = position_plane[np.newaxis, :] - line_origins

    norm_dot_off = np.dot(normal_plane, offsets.T)
    # At least 1D for the special case n = 1
    norm_dot_dir = np.atleast_1d(np.dot(normal_plane, line_directions.T))

    t = np.full_like(norm_dot_off, fill_value=np.nan, dtype=np.float64)

    if np.any(norm_dot_dir == 0):
        logging.warning('Some line plane intersection could not be calculated')

    sel = norm_dot_dir != 0
    t[sel] = norm_dot_off[sel] / norm_dot_dir[sel]

    return line_origins + line_directions * t[:, np.newaxis]


def spherical_to_cartesian(phi, theta, r):
    ''' Transformation from spherical to cartesian coordinates.

    Parameters
    ----------
    phi, theta, r : float
        Position in spherical space.

    Returns
    -------
    Cartesian coordinates x, y and z.
    '''
    if np.any(r < 0):
        raise RuntimeError('Conversion from spherical to cartesian coordinates failed, because r < 0')
    if np.any(theta < 0) or np.any(theta >= np.pi):
        raise RuntimeError('Conversion from spherical to cartesian coordinates failed, because theta exceeds [0, Pi[')
    x = r * np.cos(phi) * np.sin(theta)
    y = r * np.sin(phi) * np.sin(theta)
    z = r * np.cos(theta)

    return x, y, z


def rotation_matrix_x(alpha):
    ''' Rotation matrix for a rotation around the x axis by an angle alpha (right-handed system).

    Parameters
    ----------
    alpha : float
        Angle in radians.

    Returns
    -------
    Array with shape (3, 3).
    '''
    return np.array([[1, 0, 0],
                     [0, np.cos(alpha), -np.sin(alpha)],
                     [0, np.sin(alpha), np.cos(alpha)]],
                    dtype=np.float64)


def rotation_matrix_y(beta):
    ''' Rotation matrix for a rotation around the y axis by an angle beta (right-handed system).
    '''
    return np.array([[np.cos(beta), 0, np.sin(beta)],
                     [0, 1, 0],
                     [-np.sin(beta), 0, np.cos(beta)]],
                    dtype=np.float64)


def rotation_matrix_z(gamma):
    ''' Rotation matrix for a rotation around the z axis by an angle gamma (right-handed system).
    '''
    return np.array([[np.cos(gamma), -np.sin(gamma), 0],
                     [np.sin(gamma), np.cos(gamma), 0],
                     [0, 0, 1]],
                    dtype=np.float64)


def rotation_matrix(alpha, beta, gamma):
    ''' Calculates the rotation matrix R = Rz(gamma) * Ry(beta) * Rx(alpha).

    Note
    ----
    The matrix represents a rotation around the x axis, then the y axis,
    and then the z axis in a right-handed coordinate system. The columns of the
    matrix are the local axes (u, v, w) expressed in the global system.

    Parameters
    ----------
    alpha : float
        Angle in radians for rotation around x.
    beta : float
        Angle in radians for rotation around y.
    gamma : float
        Angle in radians for rotation around z.

    Returns
    -------
    Array with shape (3, 3).
    '''
    return np.linalg.multi_dot([rotation_matrix_z(gamma=gamma), rotation_matrix_y(beta=beta), rotation_matrix_x(alpha=alpha)])


def rotation_matrix_derivatives(alpha, beta, gamma):
    ''' Derivatives of the rotation matrix R = Rz(gamma) * Ry(beta) * Rx(alpha) with respect to alpha, beta and gamma.

    Returns
    -------
    Array with shape (3, 3, 3). The first axis selects the angle (alpha, beta, gamma).
    '''
    rot_x = rotation_matrix_x(alpha)
    rot_y = rotation_matrix_y(beta)
    rot_z = rotation_matrix_z(gamma)
    d_rot_x = np.array([[0, 0, 0],
                        [0, -np.sin(alpha), -np.cos(alpha)],
                        [0, np.cos(alpha), -np.sin(alpha)]],
                       dtype=np.float64)
    d_rot_y = np.array([[-np.sin(beta), 0, np.cos(beta)],
                        [0, 0, 0],
                        [-np.cos(beta), 0, -np.sin(beta)]],
                       dtype=np.float64)
    d_rot_z = np.array([[-np.sin(gamma), -np.cos(gamma), 0],
                        [np.cos(gamma), -np.sin(gamma), 0],
                        [0, 0, 0]],
                       dtype=np.float64)
    return np.array([np.linalg.multi_dot([rot_z, rot_y, d_rot_x]),
                     np.linalg.multi_dot([rot_z, d_rot_y, rot_x]),
                     np.linalg.multi_dot([d_rot_z, rot_y, rot_x])])


def euler_angles(R):
    ''' Calculates the Euler angles from rotation matrix R.

    Note
    ----
    In a right-handed system. The rotation is done around x then y then z,
    i.e. R = Rz(gamma) * Ry(beta) * Rx(alpha).
    In cases of beta = pi/2 and -pi/2, gamma and alpha are linked (gimbal lock).
    In this case, gamma is set to zero.

    Parameters
    ----------
    R : array
        Rotation matrix.

    Returns
    -------
    Returns Euler angles alpha, beta and gamma.
    '''
    def is_rotation_matrix(R):
        norm = np.linalg.norm(np.identity(3, dtype=R.dtype) - np.dot(R.T, R))
        return np.isclose(0.0, norm)

    if not is_rotation_matrix(R):
        raise ValueError("%s is not a rotation matrix" % str(R))

    if R[2, 0] == -1:
        gamma = 0.0  # gimbal lock
        alpha = gamma + np.arctan2(R[0, 1], R[0, 2])
        beta = np.pi / 2
    elif R[2, 0] == 1:
        gamma = 0.0  # gimbal lock
        alpha = -gamma + np.arctan2(-R[0, 1], -R[0, 2])
        beta = -np.pi / 2
    else:
        beta_1 = -np.arcsin(R[2, 0])
        beta_2 = np.pi - beta_1
        alpha_1 = np.arctan2(R[2, 1] / np.cos(beta_1), R[2, 2] / np.cos(beta_1))
        alpha_2 = np.arctan2(R[2, 1] / np.cos(beta_2), R[2, 2] / np.cos(beta_2))
        gamma_1 = np.arctan2(R[1, 0] / np.cos(beta_1), R[0, 0] / np.cos(beta_1))
        gamma_2 = np.arctan2(R[1, 0] / np.cos(beta_2), R[0, 0] / np.cos(beta_2))
        # chose the angles with smaller values
        if np.sum(np.abs([alpha_1, beta_1, gamma_1])) <= np.sum(np.abs([alpha_2, beta_2, gamma_2])):
            alpha, beta, gamma = alpha_1, beta_1, gamma_1
        else:
            alpha, beta, gamma = alpha_2, beta_2, gamma_2
    return alpha, beta, gamma


def translation_matrix(x, y, z):
    ''' Translation matrix (4 x 4) for the translation by x, y, z.
    '''
    translation_matrix = np.eye(4, 4, 0, dtype=np.float64)
    translation_matrix[:3, 3] = np.array([x, y, z], dtype=np.float64)
    return translation_matrix


def local_to_global_transformation_matrix(x, y, z, alpha, beta, gamma):
    ''' Transformation matrix T(x, y, z) * R(alpha, beta, gamma) from the local system of a plane to the global system.

    Parameters
    ----------
    x, y, z : float
        Position of the plane origin in the global system.
    alpha, beta, gamma : float
        Angles in radians for rotation around x, y and z.

    Returns
    -------
    Array with shape (4, 4).
    '''
    R = np.eye(4, 4, 0, dtype=np.float64)
    R[:3, :3] = rotation_matrix(alpha=alpha, beta=beta, gamma=gamma)
    return np.dot(translation_matrix(x=x, y=y, z=z), R)


def global_to_local_transformation_matrix(x, y, z, alpha, beta, gamma):
    ''' Inverse of local_to_global_transformation_matrix().

    Translation by (-x, -y, -z) followed by the rotation R(alpha, beta, gamma).T.
    '''
    R = np.eye(4, 4, 0, dtype=np.float64)
    R[:3, :3] = rotation_matrix(alpha=alpha, beta=beta, gamma=gamma).T
    return np.dot(R, translation_matrix(x=-x, y=-y, z=-z))


def decompose_transformation_matrix(transformation_matrix):
    ''' Split a rigid transformation (4 x 4) into the translation and the Euler angles.

    Returns
    -------
    Tuple (x, y, z, alpha, beta, gamma).
    '''
    transformation_matrix = np.asarray(transformation_matrix, dtype=np.float64)
    if transformation_matrix.shape != (4, 4):
        raise ValueError('Transformation matrix must have shape (4, 4)')
    alpha, beta, gamma = euler_angles(R=transformation_matrix[:3, :3])
    x, y, z = transformation_matrix[:3, 3]
    return float(x), float(y), float(z), float(alpha), float(beta), float(gamma)


def apply_transformation_matrix(x, y, z, transformation_matrix):
    ''' Takes arrays for x, y, z and applies a transformation matrix (4 x 4).

    Returns
    -------
    Arrays with transformed x, y and z coordinates.
    '''
    pos = np.column_stack((x, y, z, np.ones_like(x, dtype=np.float64))).T
    pos_transformed = np.dot(transformation_matrix, pos).T[:, :-1]
    return pos_transformed[:, 0], pos_transformed[:, 1], pos_transformed[:, 2]
