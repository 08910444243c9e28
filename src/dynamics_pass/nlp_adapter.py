import casadi
import numpy as np
import scipy.sparse
from scipy.optimize import minimize, Bounds
from typing import Callable, Dict, Optional, Tuple
from dynamics_pass.fit_problem import DynamicsFitProblem

# Iterates that violate the constraints by more than this are never kept as the "best" solution
MAX_BEST_PRIMAL_INFEASIBILITY = 1.0


class BestIterateTracker:
    """
    Remembers the iterate with the lowest objective among those that are close enough to feasible. Interior point
    and quasi-Newton solvers can wander uphill before terminating, so the final iterate isn't always the best one.
    """
    def __init__(self, max_primal_infeasibility: float = MAX_BEST_PRIMAL_INFEASIBILITY):
        self.max_primal_infeasibility = max_primal_infeasibility
        self.best_objective: float = np.inf
        self.best_iteration: int = -1
        self.best_x: Optional[np.ndarray] = None

    def observe(self, iteration: int, objective: float, primal_infeasibility: float, x: Optional[np.ndarray]) -> bool:
        if x is None or np.isnan(objective):
            return False
        if objective < self.best_objective and abs(primal_infeasibility) < self.max_primal_infeasibility:
            self.best_objective = objective
            self.best_iteration = iteration
            self.best_x = np.array(x, dtype=np.float64)
            return True
        return False


class NLPSolveResult:
    def __init__(self,
                 status: int,
                 message: str,
                 iterations: int,
                 final_objective: float,
                 best_objective: float,
                 best_iteration: int,
                 success: bool):
        self.status = status
        self.message = message
        self.iterations = iterations
        self.final_objective = final_objective
        self.best_objective = best_objective
        self.best_iteration = best_iteration
        self.success = success

    def __repr__(self):
        return f'NLPSolveResult(status={self.status}, success={self.success}, iterations={self.iterations}, ' \
               f'final_objective={self.final_objective}, best_objective={self.best_objective} ' \
               f'at iteration {self.best_iteration}, message={self.message!r})'


class DynamicsFitNLP:
    """
    Exposes a DynamicsFitProblem through the callbacks a nonlinear programming solver expects: sizes, bounds, a
    starting point, the objective and its gradient, the constraints and their (constant, sparse) Jacobian, and a
    per-iteration hook that tracks the best iterate so far.
    """
    def __init__(self, problem: DynamicsFitProblem, tracker: Optional[BestIterateTracker] = None):
        self.problem = problem
        self.tracker = tracker if tracker is not None else BestIterateTracker()
        self.n = problem.get_problem_size()
        self.m = problem.get_constraint_size()
        self._sparse_jacobian = problem.compute_sparse_constraints_jacobian()
        self._jacobian_values = self._sparse_jacobian.values_array()

    @property
    def nnz_jacobian(self) -> int:
        return len(self._sparse_jacobian)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Returns (variable lower, variable upper, constraint lower, constraint upper). Every constraint is an
        equality with zero.
        """
        return self.problem.flatten_lower_bound(), self.problem.flatten_upper_bound(), np.zeros(self.m), \
            np.zeros(self.m)

    def starting_point(self) -> np.ndarray:
        return self.problem.flatten()

    def objective(self, x: np.ndarray) -> float:
        return self.problem.compute_loss(x)

    def gradient(self, x: np.ndarray) -> np.ndarray:
        return self.problem.compute_gradient(x)

    def constraints(self, x: np.ndarray) -> np.ndarray:
        return self.problem.compute_constraints(x)

    def jacobianstructure(self) -> Tuple[np.ndarray, np.ndarray]:
        return self._sparse_jacobian.structure()

    def jacobian(self, x: np.ndarray) -> np.ndarray:
        return self._jacobian_values

    def jacobian_matrix(self) -> scipy.sparse.csr_matrix:
        return self._sparse_jacobian.to_csr()

    def hessian(self, x: np.ndarray, lagrange: np.ndarray, obj_factor: float):
        """
        There's no exact Hessian. Returns False to tell the solver it isn't available, so it has to run with a
        limited-memory quasi-Newton approximation.
        """
        return False

    def primal_infeasibility(self, x: np.ndarray) -> float:
        if self.m == 0:
            return 0.0
        return float(np.max(np.abs(self.constraints(x))))

    def intermediate(self,
                     alg_mod: int,
                     iter_count: int,
                     obj_value: float,
                     inf_pr: float,
                     inf_du: float = 0.0,
                     mu: float = 0.0,
                     d_norm: float = 0.0,
                     regularization_size: float = 0.0,
                     alpha_du: float = 0.0,
                     alpha_pr: float = 0.0,
                     ls_trials: int = 0,
                     x: Optional[np.ndarray] = None) -> bool:
        """
        Called once per solver iteration. When the solver doesn't hand us the iterate, the last point the problem
        was evaluated at is used instead. Returning False would ask the solver to stop.
        """
        if x is None:
            x = self.problem.last_x()
        self.tracker.observe(iter_count, obj_value, inf_pr, x)
        return True

    def finalize(self, x: np.ndarray):
        if self.tracker.best_x is not None:
            print(f'Recovering state with best loss {self.tracker.best_objective} from iteration '
                  f'{self.tracker.best_iteration}', flush=True)
            self.problem.finalize_solution(self.tracker.best_x)
        else:
            self.problem.finalize_solution(x)


# IPOPT's ApplicationReturnStatus codes, keyed by the names CasADi reports
IPOPT_RETURN_CODES = {
    'Solve_Succeeded': 0,
    'Solved_To_Acceptable_Level': 1,
    'Infeasible_Problem_Detected': 2,
    'Search_Direction_Becomes_Too_Small': 3,
    'Diverging_Iterates': 4,
    'User_Requested_Stop': 5,
    'Feasible_Point_Found': 6,
    'Maximum_Iterations_Exceeded': -1,
    'Restoration_Failed': -2,
    'Error_In_Step_Computation': -3,
    'Maximum_CpuTime_Exceeded': -4,
    'Not_Enough_Degrees_Of_Freedom': -10,
    'Invalid_Problem_Definition': -11,
    'Invalid_Option': -12,
    'Invalid_Number_Detected': -13,
}


class ObjectiveGradientCallback(casadi.Callback):
    """
    The Jacobian of ObjectiveCallback, as CasADi wants it: inputs are x and the nominal objective value, the output
    is the 1 x n gradient row.
    """
    def __init__(self, name: str, nlp: DynamicsFitNLP, opts: dict = {}):
        casadi.Callback.__init__(self)
        self.nlp = nlp
        self.construct(name, opts)

    def get_n_in(self):
        return 2

    def get_n_out(self):
        return 1

    def get_sparsity_in(self, i):
        if i == 0:
            return casadi.Sparsity.dense(self.nlp.n, 1)
        return casadi.Sparsity(1, 1)

    def get_sparsity_out(self, i):
        return casadi.Sparsity.dense(1, self.nlp.n)

    def eval(self, arg):
        x = np.array(arg[0]).flatten()
        return [casadi.DM(self.nlp.gradient(x)).T]


class ObjectiveCallback(casadi.Callback):
    """
    Wraps the dynamics fit loss as a black-box CasADi function, with the analytical gradient as its Jacobian.
    """
    def __init__(self, name: str, nlp: DynamicsFitNLP, opts: dict = {}):
        casadi.Callback.__init__(self)
        self.nlp = nlp
        # CasADi doesn't own callbacks, so the Jacobian has to be kept alive here
        self.gradient_callback: Optional[ObjectiveGradientCallback] = None
        self.construct(name, opts)

    def get_n_in(self):
        return 1

    def get_n_out(self):
        return 1

    def get_sparsity_in(self, i):
        return casadi.Sparsity.dense(self.nlp.n, 1)

    def get_sparsity_out(self, i):
        return casadi.Sparsity.dense(1, 1)

    def eval(self, arg):
        x = np.array(arg[0]).flatten()
        return [casadi.DM(self.nlp.objective(x))]

    def has_jacobian(self):
        return True

    def get_jacobian(self, name, inames, onames, opts):
        self.gradient_callback = ObjectiveGradientCallback(name, self.nlp, opts)
        return self.gradient_callback


class IterationCallback(casadi.Callback):
    """
    Called by the solver after every iteration with the current iterate. `on_iteration` gets (iteration, objective,
    primal infeasibility, x) and returns False to stop the solve.
    """
    def __init__(self,
                 name: str,
                 nx: int,
                 ng: int,
                 on_iteration: Callable[[int, float, float, np.ndarray], bool],
                 opts: dict = {}):
        casadi.Callback.__init__(self)
        self.nx = nx
        self.ng = ng
        self.on_iteration = on_iteration
        self.iteration = -1
        self.construct(name, opts)

    def get_n_in(self):
        return casadi.nlpsol_n_out()

    def get_n_out(self):
        return 1

    def get_name_in(self, i):
        return casadi.nlpsol_out(i)

    def get_name_out(self, i):
        return 'ret'

    def get_sparsity_in(self, i):
        name = casadi.nlpsol_out(i)
        if name == 'f':
            return casadi.Sparsity.scalar()
        elif name in ('x', 'lam_x'):
            return casadi.Sparsity.dense(self.nx)
        elif name in ('g', 'lam_g'):
            return casadi.Sparsity.dense(self.ng)
        return casadi.Sparsity(0, 0)

    def eval(self, arg):
        values = dict(zip(casadi.nlpsol_out(), arg))
        x = np.array(values['x']).flatten()
        g = np.array(values['g']).flatten()
        infeasibility = float(np.max(np.abs(g))) if len(g) > 0 else 0.0
        self.iteration += 1
        keep_going = self.on_iteration(self.iteration, float(values['f']), infeasibility, x)
        return [0 if keep_going else 1]


def ipopt_options(tolerance: float,
                  iteration_limit: int,
                  lbfgs_history_length: int,
                  print_frequency: int,
                  silent: bool) -> Dict[str, object]:
    """
    The IPOPT settings for a dynamics fit, in CasADi's `nlpsol` option format. The Hessian is always the
    limited-memory quasi-Newton approximation, since the problem can have hundreds of thousands of variables.
    """
    options: Dict[str, object] = {
        'ipopt.tol': tolerance,
        'ipopt.linear_solver': 'mumps',
        'ipopt.hessian_approximation': 'limited-memory',
        'ipopt.limited_memory_max_history': lbfgs_history_length,
        'ipopt.max_iter': iteration_limit,
        'ipopt.watchdog_shortened_iter_trigger': 0,
        'ipopt.sb': 'yes',
        'print_time': 0,
    }
    if print_frequency > 0:
        options['ipopt.print_frequency_iter'] = print_frequency
    else:
        options['ipopt.print_frequency_iter'] = int(np.iinfo(np.int32).max)
    if silent:
        options['ipopt.print_level'] = 0
    return options


def to_casadi_sparse(matrix: scipy.sparse.spmatrix) -> casadi.DM:
    csc = scipy.sparse.csc_matrix(matrix)
    csc.sum_duplicates()
    csc.sort_indices()
    sparsity = casadi.Sparsity(csc.shape[0], csc.shape[1], csc.indptr.tolist(), csc.indices.tolist())
    return casadi.DM(sparsity, csc.data.tolist())


def solve_nlp(nlp: DynamicsFitNLP,
              tolerance: float = 1e-8,
              iteration_limit: int = 500,
              lbfgs_history_length: int = 8,
              print_frequency: int = 1,
              silent: bool = False) -> NLPSolveResult:
    """
    Solves the program and writes the best iterate back into the problem. Without constraints this is SciPy's
    L-BFGS-B. With them it's IPOPT through CasADi: the loss is a black-box callback, the constraints are the constant
    sparse Jacobian times x, and the Hessian is a limited-memory approximation keeping `lbfgs_history_length`
    updates.
    """
    lower, upper, constraint_lower, constraint_upper = nlp.bounds()
    x0 = np.clip(nlp.starting_point(), lower, upper)
    iteration = [0]

    def report(value: float, infeasibility: float):
        if not silent and print_frequency > 0 and iteration[0] % print_frequency == 0:
            print(f'iter {iteration[0]}: objective={value:.8g} infeasibility={infeasibility:.3g}', flush=True)

    initial_objective = nlp.objective(x0)
    initial_infeasibility = nlp.primal_infeasibility(x0)
    nlp.intermediate(0, 0, initial_objective, initial_infeasibility, x=x0)

    if nlp.m == 0:
        report(initial_objective, initial_infeasibility)

        def lbfgs_callback(xk):
            iteration[0] += 1
            value = nlp.objective(xk)
            nlp.intermediate(0, iteration[0], value, 0.0, x=xk)
            report(value, 0.0)

        result = minimize(nlp.objective, x0, jac=nlp.gradient, method='L-BFGS-B', bounds=Bounds(lower, upper),
                          callback=lbfgs_callback,
                          options={'maxiter': iteration_limit, 'maxcor': lbfgs_history_length,
                                   'ftol': tolerance, 'gtol': tolerance})
        x_final = result.x
        status = int(result.status)
        message = str(result.message)
        iterations = int(result.nit)
        success = bool(result.success)
    else:
        def on_iteration(iter_count: int, value: float, infeasibility: float, x: np.ndarray) -> bool:
            iteration[0] = iter_count
            return nlp.intermediate(0, iter_count, value, infeasibility, x=x)

        objective_callback = ObjectiveCallback('dynamics_fit_loss', nlp)
        iteration_callback = IterationCallback('dynamics_fit_iteration', nlp.n, nlp.m, on_iteration)
        x = casadi.MX.sym('x', nlp.n)
        program = {'x': x,
                   'f': objective_callback(x),
                   'g': casadi.mtimes(to_casadi_sparse(nlp.jacobian_matrix()), x)}
        options = ipopt_options(tolerance, iteration_limit, lbfgs_history_length, print_frequency, silent)
        options['iteration_callback'] = iteration_callback
        solver = casadi.nlpsol('dynamics_fit', 'ipopt', program, options)
        solution = solver(x0=x0, lbx=lower, ubx=upper, lbg=constraint_lower, ubg=constraint_upper)
        stats = solver.stats()

        x_final = np.array(solution['x']).flatten()
        message = str(stats.get('return_status', 'unknown'))
        status = IPOPT_RETURN_CODES.get(message, -100)
        iterations = int(stats.get('iter_count', iteration[0]))
        success = bool(stats.get('success', status == 0))

    final_objective = nlp.objective(x_final)
    nlp.intermediate(0, iteration[0] + 1, final_objective, nlp.primal_infeasibility(x_final), x=x_final)
    nlp.finalize(x_final)
    return NLPSolveResult(status=status,
                          message=message,
                          iterations=iterations,
                          final_objective=final_objective,
                          best_objective=nlp.tracker.best_objective,
                          best_iteration=nlp.tracker.best_iteration,
                          success=success)
