from typing import Dict, Any, Optional
from dynamics_pass.config import DynamicsFitProblemConfig
from dynamics_pass.dynamics_fitter import DynamicsFitter
from dynamics_pass.initialization import DynamicsInitialization


def dynamics_pass(fitter: DynamicsFitter,
                  init: DynamicsInitialization,
                  subject_json: Optional[Dict[str, Any]] = None,
                  mass_regularization_weight: float = 50.0,
                  max_num_trials: int = 4) -> bool:
    """
    This function is responsible for running the dynamics pass on an initialization. It assumes that we already
    have a reasonably accurate guess for the subject's body scales, marker offsets, and motion. This function will
    then do the following:
    - Flag the frames that are probably missing ground reaction force data, so they don't drag the fit around.
    - Scale the link masses to match the measured vertical forces, then refine them with a linear least squares fit
    to the body accelerations.
    - Run an optimization over the inertial properties alone, holding the motion fixed.
    - Run a full "kitchen sink" optimization to further refine everything about that initial guess, and then
    clean up the motion of each trial one at a time.

    Returns False if there was no usable GRF data to fit to.
    """
    fitter.estimate_foot_ground_contacts(init)

    good_frames_count = 0
    total_frames_count = 0
    for trial_missing_grf in init.probably_missing_grf:
        good_frames_count += sum([0 if missing else 1 for missing in trial_missing_grf])
        total_frames_count += len(trial_missing_grf)
    bad_frames_count = total_frames_count - good_frames_count
    print('Detected missing/bad GRF data on ' + str(bad_frames_count) + '/' + str(total_frames_count) + ' frames',
          flush=True)
    if good_frames_count == 0:
        print('ERROR: we have no good frames of GRF data left after filtering out suspicious GRF frames. This '
              'probably means input GRF data is badly miscalibrated with respect to marker data (maybe they are in '
              'different coordinate frames?), or there are unmeasured external forces acting on your subject. '
              'Aborting the physics fitter!', flush=True)
        return False

    #######################################################################################################
    # Stage 1: Initialize the masses
    #######################################################################################################

    fitter.scale_link_masses_from_gravity(init)
    fitter.estimate_link_masses_from_acceleration(init, mass_regularization_weight)

    fitter.run_optimization(
        init,
        config=DynamicsFitProblemConfig()
        .set_include_masses(True)
        .set_include_coms(True)
        .set_include_inertias(True)
        .set_include_body_scales(False)
        .set_include_marker_offsets(False)
        .set_include_poses(False)
        .set_max_num_trials(max_num_trials)
        .update_from_json(subject_json))

    #######################################################################################################
    # Stage 2: Full "kitchen sink" optimization
    #######################################################################################################

    fitter.set_iteration_limit(200)
    fitter.set_lbfgs_history_length(20)
    fitter.run_optimization(
        init,
        config=DynamicsFitProblemConfig()
        .set_residual_weight(1e-2)
        .set_max_num_trials(max_num_trials)
        .set_include_body_scales(True)
        .set_include_marker_offsets(False)
        .set_include_poses(True)
        .set_joint_weight(0.0 if len(init.joints) == 0 else 1.0)
        .set_marker_weight(50.0)
        .set_regularize_body_scales(1.0)
        .set_regularize_poses(0.01)
        .update_from_json(subject_json))

    #######################################################################################################
    # Stage 3: Re-run a position-only optimization on every trial in the dataset
    #######################################################################################################

    for segment in range(init.num_trials()):
        num_frames = init.num_frames(segment)
        if num_frames < 1000:
            fitter.set_iteration_limit(200)
            fitter.set_lbfgs_history_length(20)
        elif num_frames < 5000:
            fitter.set_iteration_limit(100)
            fitter.set_lbfgs_history_length(15)
        else:
            fitter.set_iteration_limit(50)
            fitter.set_lbfgs_history_length(3)

        fitter.run_optimization(
            init,
            config=DynamicsFitProblemConfig()
            .set_only_one_trial(segment)
            .set_residual_weight(1e-2)
            .set_include_masses(False)
            .set_include_coms(False)
            .set_include_inertias(False)
            .set_include_body_scales(False)
            .set_include_marker_offsets(False)
            .set_include_poses(True)
            .set_joint_weight(0.0 if len(init.joints) == 0 else 1.0)
            .set_marker_weight(50.0)
            .set_regularize_poses(0.01))

    marker_rmse = fitter.compute_average_marker_rmse(init)
    residual_force, residual_torque = fitter.compute_average_residual_force(init)
    real_force, real_torque = fitter.compute_average_real_force(init)
    print(f'Dynamics pass finished: marker RMSE {marker_rmse:.4f} m, average residual force {residual_force:.3f} N '
          f'(vs {real_force:.3f} N measured), average residual torque {residual_torque:.3f} Nm '
          f'(vs {real_torque:.3f} Nm measured)', flush=True)
    return True
