import pytest
from datetime import time

from cohort_scheduler.db.models import ActionTemplate, ActionType, Group, SubGroup, TemplateStatus
from cohort_scheduler.services.template_service import TemplateService
from cohort_scheduler.utils.errors import TemplateReferenceError, ValidationError


class TestTemplateLookups:
    """Test reading the template hierarchy."""

    def test_active_sub_groups_ordered(self, db_session, onboarding_group, template_factory):
        service = TemplateService(db_session)
        retired = template_factory.sub_group(onboarding_group.group, "Retired", 4)
        retired.status = TemplateStatus.INACTIVE
        db_session.flush()

        names = [
            sg.sub_group_name
            for sg in service.get_active_sub_groups(onboarding_group.group.id)
        ]
        assert names == ["Week 1", "Week 2", "Week 3"]

    def test_active_templates_ordered_by_offset_then_time(
        self, db_session, onboarding_group, template_factory
    ):
        week1 = onboarding_group.sub_groups[0]
        template_factory.template(week1, ActionType.DISPLAY_INFORMATION, 0, time(7, 0))

        service = TemplateService(db_session)
        templates = service.get_active_action_templates(week1.id)

        assert [(t.action_datetime_days_offset, t.time_of_day_local) for t in templates] == [
            (0, time(7, 0)),
            (0, time(9, 0)),
            (1, time(10, 0)),
        ]

    def test_get_active_group_rejects_unknown_and_inactive(self, db_session):
        service = TemplateService(db_session)
        with pytest.raises(TemplateReferenceError):
            service.get_active_group("missing")

        group = Group(group_name="Old", status=TemplateStatus.INACTIVE)
        db_session.add(group)
        db_session.flush()
        with pytest.raises(TemplateReferenceError):
            service.get_active_group(group.id)


class TestSubGroupChainValidation:
    """Test chain validation on transient rows that the database would reject."""

    def _sub_group(self, order, offset=0, day_of_week=None):
        return SubGroup(
            sub_group_name=f"Stage {order}",
            assignment_order=order,
            start_date_days_offset=offset,
            start_date_day_of_week=day_of_week,
        )

    def test_valid_chain(self):
        TemplateService.validate_sub_group_chain(
            [self._sub_group(1), self._sub_group(2, 7, 1)]
        )

    @pytest.mark.parametrize(
        "chain",
        [
            [(0, 0, None)],
            [(1, 0, None), (1, 3, None)],
            [(1, -2, None)],
            [(1, 0, 7)],
        ],
    )
    def test_invalid_chain(self, chain):
        with pytest.raises(ValidationError):
            TemplateService.validate_sub_group_chain(
                [self._sub_group(*fields) for fields in chain]
            )

    def test_message_template_without_body_is_invalid(self):
        template = ActionTemplate(
            action_type=ActionType.SEND_MESSAGE,
            action_datetime_days_offset=0,
            time_of_day_local=time(9, 0),
            message_subject="Hello",
        )
        with pytest.raises(ValidationError):
            TemplateService.validate_action_template(template)


class TestSupersedeGroup:
    """Test versioned replacement of groups."""

    def test_supersede_links_old_to_new(self, db_session, onboarding_group):
        service = TemplateService(db_session)
        old = onboarding_group.group

        replacement = service.supersede_group(old.id, "Onboarding")

        assert old.status == TemplateStatus.INACTIVE
        assert old.superseded_by_id == replacement.id
        assert old.group_name == "Onboarding"
        assert replacement.status == TemplateStatus.ACTIVE
        assert service.get_active_group_by_name("Onboarding").id == replacement.id

    def test_current_version_follows_chain(self, db_session, onboarding_group):
        service = TemplateService(db_session)
        v2 = service.supersede_group(onboarding_group.group.id, "Onboarding v2")
        v3 = service.supersede_group(v2.id, "Onboarding v3")

        assert service.get_current_version(onboarding_group.group.id).id == v3.id
        assert service.get_current_version(v3.id).id == v3.id

    def test_cannot_supersede_inactive_group(self, db_session, onboarding_group):
        service = TemplateService(db_session)
        service.supersede_group(onboarding_group.group.id, "Onboarding v2")

        with pytest.raises(TemplateReferenceError):
            service.supersede_group(onboarding_group.group.id, "Onboarding v3")
