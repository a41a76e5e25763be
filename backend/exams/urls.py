from django.urls import path
from .views_exam import (
    AvailableExamListView,
    StartAttemptView,
    SubmitAttemptView,
)
from .views_lifecycle import (
    CloseOrphanedAttemptsView,
    ExamDetailAdminView,
    ExamStateView,
    ExamWizardStepView,
    ExamWizardView,
    LifecycleStatusView,
    ReconcileExamsView,
)

urlpatterns = [
    # Lifecycle administration
    path('lifecycle/status/', LifecycleStatusView.as_view(), name='exam-lifecycle-status'),
    path('lifecycle/reconcile/', ReconcileExamsView.as_view(), name='exam-lifecycle-reconcile'),
    path('lifecycle/close-orphans/', CloseOrphanedAttemptsView.as_view(), name='exam-lifecycle-close-orphans'),
    path('<int:exam_id>/', ExamDetailAdminView.as_view(), name='exam-detail'),
    path('<int:exam_id>/state/', ExamStateView.as_view(), name='exam-state'),
    path('<int:exam_id>/wizard/', ExamWizardView.as_view(), name='exam-wizard'),
    path('<int:exam_id>/wizard/step/', ExamWizardStepView.as_view(), name='exam-wizard-step'),

    # Examinee
    path('available/', AvailableExamListView.as_view(), name='exam-available'),
    path('<int:exam_id>/start/', StartAttemptView.as_view(), name='exam-start'),
    path('attempts/<int:attempt_id>/submit/', SubmitAttemptView.as_view(), name='attempt-submit'),
]
