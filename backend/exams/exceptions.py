class LifecycleError(Exception):
    """Base error for exam lifecycle operations requested by an operator or examinee."""


class InvalidTransition(LifecycleError):
    pass


class ExamNotPublishable(LifecycleError):
    def __init__(self, missing=None):
        self.missing = list(missing or [])
        super().__init__("Exam is not complete enough to be published.")


class StepIncomplete(LifecycleError):
    def __init__(self, step, missing=None):
        self.step = step
        self.missing = list(missing or [])
        super().__init__(f"Wizard step {step} is not complete.")


class ExamNotAvailable(LifecycleError):
    pass
