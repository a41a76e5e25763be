from rest_framework import serializers
from .models import Attempt, Exam, SubTest, Track


class SubTestSerializer(serializers.ModelSerializer):
    class Meta:
        model = SubTest
        fields = ['id', 'name', 'time_limit_minutes', 'order']


class TrackSerializer(serializers.ModelSerializer):
    class Meta:
        model = Track
        fields = ['id', 'name', 'description', 'approval_mode']


class ExamSerializer(serializers.ModelSerializer):
    subtests = SubTestSerializer(many=True, read_only=True)
    tracks = TrackSerializer(many=True, read_only=True)

    class Meta:
        model = Exam
        fields = [
            'id',
            'code',
            'title',
            'description',
            'time_limit_minutes',
            'access_mode',
            'state',
            'wizard_step',
            'valid_from',
            'valid_until',
            'published_at',
            'finalized_at',
            'subtests',
            'tracks',
            'created_at',
            'updated_at',
        ]


class AvailableExamSerializer(serializers.ModelSerializer):
    """Examinee-facing listing without wizard internals"""

    class Meta:
        model = Exam
        fields = ['id', 'code', 'title', 'description', 'time_limit_minutes', 'valid_from', 'valid_until']


class AttemptSerializer(serializers.ModelSerializer):
    exam_code = serializers.CharField(source='exam.code', read_only=True)

    class Meta:
        model = Attempt
        fields = [
            'id',
            'exam',
            'exam_code',
            'track',
            'state',
            'started_at',
            'ended_at',
            'closed_by',
            'score',
            'is_passed',
        ]


class StateChangeSerializer(serializers.Serializer):
    state = serializers.ChoiceField(choices=Exam.State.choices)
    valid_from = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    valid_until = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class WizardStepSerializer(serializers.Serializer):
    step = serializers.IntegerField(min_value=1, max_value=6)


class StartAttemptSerializer(serializers.Serializer):
    track_id = serializers.IntegerField(required=False, allow_null=True)
