"""
exceptions.py
-------------
Description: Custom exception classes for use in the dynamics fitting toolkit.
"""

import textwrap


class Error(Exception):
    """Base class for exceptions used in the dynamics fitting toolkit."""
    def __init__(self, original_message):
        self.message = f'{self.get_message()} Below is the original error message, which may contain useful ' \
                       f'information about your issue.'
        self.original_message = f'\n\n{textwrap.indent(original_message, " " * 4)}\n\n'
        self.type = self.get_type()

        super().__init__(self.message + self.original_message)

    def get_message(self):
        raise NotImplementedError("Subclasses must implement the 'get_message' method.")

    def get_type(self):
        return self.__class__.__name__

    def get_error_dict(self):
        return {
            "type": self.type,
            "message": self.message,
            "original_message": self.original_message
        }


class TrialPreprocessingError(Error):
    """Raised when the trial inputs handed to the fitter are malformed."""
    def get_message(self):
        return "TrialPreprocessingError: Error encountered when preparing the marker, pose and ground reaction force " \
               "data for the dynamics fit. Please check that every trial has at least 3 frames, and that the poses, " \
               "marker observations, force plate data and frame rates all describe the same number of trials and " \
               "frames."


class DynamicsFitterError(Error):
    """Raised when an error occurs during the dynamics fitting step."""
    def get_message(self):
        return "DynamicsFitterError: Error encountered when running the dynamics fitting step. This step is highly " \
               "dependent on the quality of the ground reaction force data provided. Please check that the force " \
               "plate data is synchronized with the marker data and that the force plates are positioned correctly " \
               "relative to the marker data."


class MissingGRFStatusError(DynamicsFitterError):
    """Raised when the dynamics fit is evaluated before the missing GRF frames have been identified."""
    def get_message(self):
        return "MissingGRFStatusError: The dynamics fit problem needs to know which frames are missing ground " \
               "reaction force data before it can evaluate the residual forces. Call " \
               "estimate_foot_ground_contacts() on the initialization first."


class NumericalAnomalyError(DynamicsFitterError):
    """Raised when a term of the dynamics fit loss evaluates to NaN."""
    def __init__(self, term, original_message):
        self.term = term
        super().__init__(original_message)

    def get_message(self):
        return f"NumericalAnomalyError: The '{self.term}' term of the dynamics fit loss evaluated to NaN. This " \
               f"usually means the input poses, marker observations or force plate data contain NaN values, or " \
               f"that the optimizer has diverged."


class TrialIndexError(DynamicsFitterError):
    """Raised when a diagnostic is requested for a trial that does not exist."""
    def get_message(self):
        return "TrialIndexError: The requested trial index is out of range for this initialization."


class ProblemLayoutError(DynamicsFitterError):
    """Raised when the decision vector layout and the constraint Jacobian disagree."""
    def get_message(self):
        return "ProblemLayoutError: The dynamics fit problem's decision vector layout is inconsistent. This is a " \
               "bug, please report it with all error messages included."
