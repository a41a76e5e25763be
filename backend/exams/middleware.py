from django.conf import settings

from .services.reconciliation import ThrottledSweep


class ExamLifecycleSweepMiddleware:
    """Gives the lifecycle sweep a chance to run before each request is handled."""

    def __init__(self, get_response):
        self.get_response = get_response
        self.sweep = ThrottledSweep()

    def __call__(self, request):
        if getattr(settings, "EXAM_SWEEP_ON_REQUEST", True):
            self.sweep.maybe_run()
        return self.get_response(request)
