import numpy as np
from typing import List
from rigid_body.model import RigidBodyModel
from dynamics_pass.initialization import DynamicsInitialization
from utilities.geometry import prepare_convex_2d_shape, convex_2d_shape_contains

# A GRF body with a wrench squared norm above this is treated as loaded on that frame
FORCE_ACTIVE_THRESHOLD = 1e-3
# Conservative margin around the recorded centers of pressure when we have to guess at the plate outline
DEFAULT_PLATE_PADDING = 0.10
FLAT_GROUND_TOLERANCE = 1e-8


def expand_contact_bodies(model: RigidBodyModel, grf_bodies: List[int]) -> List[List[int]]:
    """
    Each GRF body gets a set of contact bodies: itself plus every descendant (breadth first) that isn't itself a GRF
    body. A foot made of several segments (calcaneus, toes) can touch the ground with any of them.
    """
    contact_bodies: List[List[int]] = []
    for root in grf_bodies:
        extended: List[int] = []
        queue = [root]
        while len(queue) > 0:
            cursor = queue.pop(0)
            extended.append(cursor)
            for child in model.child_bodies(cursor):
                if child not in grf_bodies:
                    queue.append(child)
        contact_bodies.append(extended)
    return contact_bodies


def _foot_force_active(init: DynamicsInitialization, trial: int, t: int, b: int) -> bool:
    wrench = init.grf_trials[trial][b * 6:b * 6 + 6, t]
    return float(wrench @ wrench) > FORCE_ACTIVE_THRESHOLD


def estimate_foot_ground_contacts(model: RigidBodyModel, init: DynamicsInitialization):
    """
    Guesses which frames of each trial are probably missing ground reaction force data. The idea is that if a foot
    looks like it's on the ground, but no force plate measured any force on it, and it isn't standing on any force
    plate, then the subject is probably standing on something we didn't measure. Fitting dynamics to those frames
    would produce a body that wants to fall through the floor, so they get flagged and excluded from the residual.

    This replaces any contact data already in `init`.
    """
    init.contact_bodies = expand_contact_bodies(model, init.grf_bodies)
    init.grf_body_contact_sphere_radius = []
    init.ground_height = []
    init.flat_ground = []
    init.default_force_plate_corners = []
    init.grf_body_force_active = []
    init.grf_body_sphere_in_contact = []
    init.grf_body_off_force_plate = []
    init.probably_missing_grf = []

    for trial in range(init.num_trials()):
        poses = init.pose_trials[trial]
        num_frames = poses.shape[1]
        plates = init.force_plate_trials[trial]

        # 1. Find the ground height, preferring the force plate corners, and falling back to the lowest center of
        # pressure
        ground_height = None
        flat_ground = True
        for plate in plates:
            for corner in plate.corners:
                if ground_height is None:
                    ground_height = corner[1]
                elif abs(ground_height - corner[1]) > FLAT_GROUND_TOLERANCE:
                    flat_ground = False
        if ground_height is None:
            for t in range(num_frames):
                for plate in plates:
                    height = plate.centers_of_pressure[t][1]
                    if ground_height is None or height < ground_height:
                        ground_height = height
        if ground_height is None:
            ground_height = 0.0

        # 2. Grow a contact sphere on each contact body until every frame with measured force shows contact
        radii: List[List[float]] = [[0.0 for _ in bodies] for bodies in init.contact_bodies]
        for t in range(num_frames):
            with model.evaluate_at(poses[:, t]):
                heights = model.body_world_positions()[:, 1] - ground_height
            for b, bodies in enumerate(init.contact_bodies):
                if not _foot_force_active(init, trial, t, b):
                    continue
                closest = int(np.argmin([heights[body] for body in bodies]))
                if heights[bodies[closest]] > radii[b][closest]:
                    radii[b][closest] = float(heights[bodies[closest]])
        init.grf_body_contact_sphere_radius.append(radii)
        init.ground_height.append(float(ground_height))
        init.flat_ground.append(flat_ground)

        # 3. If any plate doesn't know its outline, make up a generous rectangle around all the centers of pressure
        default_corners: List[np.ndarray] = []
        if any(len(plate.corners) == 0 for plate in plates):
            cops = np.array([plate.centers_of_pressure[t] for t in range(num_frames) for plate in plates])
            min_x = np.min(cops[:, 0]) - DEFAULT_PLATE_PADDING
            max_x = np.max(cops[:, 0]) + DEFAULT_PLATE_PADDING
            min_z = np.min(cops[:, 2]) - DEFAULT_PLATE_PADDING
            max_z = np.max(cops[:, 2]) + DEFAULT_PLATE_PADDING
            default_corners = [
                np.array([min_x, ground_height, min_z]),
                np.array([min_x, ground_height, max_z]),
                np.array([max_x, ground_height, max_z]),
                np.array([max_x, ground_height, min_z]),
            ]
        init.default_force_plate_corners.append(default_corners)

        shapes = [prepare_convex_2d_shape(plate.corners) for plate in plates if len(plate.corners) > 0]
        if len(default_corners) > 0:
            shapes.append(prepare_convex_2d_shape(default_corners))

        # 4. Flag frames where a foot seems to be on the ground, isn't loaded, and isn't over any plate
        trial_force_active: List[List[bool]] = []
        trial_in_contact: List[List[bool]] = []
        trial_off_plate: List[List[bool]] = []
        trial_missing: List[bool] = []
        for t in range(num_frames):
            with model.evaluate_at(poses[:, t]):
                positions = model.body_world_positions()
            force_active: List[bool] = []
            in_contact: List[bool] = []
            off_plate: List[bool] = []
            any_suspicious = False
            for b, bodies in enumerate(init.contact_bodies):
                active = _foot_force_active(init, trial, t, b)
                touching = any(positions[body][1] - ground_height <= radii[b][c] for c, body in enumerate(bodies))
                suspicious = False
                if touching and not active:
                    over_plate = any(convex_2d_shape_contains(positions[body], shape)
                                     for body in bodies for shape in shapes)
                    if not over_plate:
                        suspicious = True
                        any_suspicious = True
                force_active.append(active)
                in_contact.append(touching)
                off_plate.append(suspicious)
            trial_force_active.append(force_active)
            trial_in_contact.append(in_contact)
            trial_off_plate.append(off_plate)
            trial_missing.append(any_suspicious)

        init.grf_body_force_active.append(trial_force_active)
        init.grf_body_sphere_in_contact.append(trial_in_contact)
        init.grf_body_off_force_plate.append(trial_off_plate)
        init.probably_missing_grf.append(trial_missing)

        print(f'Trial {trial}: ground height {ground_height:.4f} ({"flat" if flat_ground else "uneven"}), '
              f'{sum(trial_missing)}/{num_frames} frames probably missing GRF', flush=True)
