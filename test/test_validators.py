from test import fixtures as f
from unittest import TestCase
from unittest.mock import Mock, create_autospec, patch

from stagegate import validators
from stagegate.backend.client import BackendError, Client
from stagegate.backend.models import (
    DocumentStatus,
    ProjectStatus,
    SubStageStatus,
)
from stagegate.validators import (
    GENERIC_ERROR,
    CompositeExitCriteriaValidator,
    ExitCriteriaResult,
    ValidatorKind,
    validate_approval_requirements,
    validate_document_requirements,
    validate_project_status,
    validate_sub_stage_completion,
)


class TestCaseWithClient(TestCase):
    def setUp(self) -> None:
        self.client = create_autospec(Client)
        self.client.required_sub_stages.return_value = []
        self.client.document_requirements.return_value = []
        self.client.documents_by_category.return_value = []
        self.client.pending_approvals.return_value = []
        self.stage = f.stage()


class TestExitCriteriaResult(TestCase):
    def test_can_advance_follows_errors(self) -> None:
        self.assertTrue(ExitCriteriaResult(warnings=["warning"]).can_advance)
        self.assertFalse(ExitCriteriaResult(errors=["error"]).can_advance)

    def test_merge_keeps_duplicates(self) -> None:
        a = ExitCriteriaResult(errors=["e"], warnings=["w"], required_actions=["a"])
        merged = a.merge(a)
        self.assertListEqual(merged.errors, ["e", "e"])
        self.assertListEqual(merged.warnings, ["w", "w"])
        self.assertListEqual(merged.required_actions, ["a", "a"])

    def test_outstanding(self) -> None:
        result = ExitCriteriaResult(errors=["e"], warnings=["w"])
        self.assertListEqual(result.outstanding(), ["e", "w"])


class TestProjectStatus(TestCaseWithClient):
    def test_active_project(self) -> None:
        result = validate_project_status(f.project(), self.stage, [], self.client)
        self.assertEqual(result, ExitCriteriaResult())

    def test_inactive_project(self) -> None:
        for status in ProjectStatus:
            if status is ProjectStatus.ACTIVE:
                continue
            with self.subTest(status=status):
                result = validate_project_status(
                    f.project(status=status), self.stage, [], self.client
                )
                self.assertFalse(result.can_advance)
                self.assertIn(
                    f"Project status is {status.value}. "
                    "Must be active to advance stages.",
                    result.errors,
                )
                self.assertIn("Activate project", result.required_actions)

    def test_missing_customer_and_title(self) -> None:
        project = f.project(customer_organization_id=None, title="   ")
        result = validate_project_status(project, self.stage, [], self.client)
        self.assertListEqual(
            result.errors,
            ["Customer organization is required", "Project title is required"],
        )
        self.assertListEqual(
            result.required_actions,
            ["Assign customer organization", "Set project title"],
        )

    def test_never_reads_backend(self) -> None:
        validate_project_status(f.project(), self.stage, [], self.client)
        self.assertListEqual(self.client.mock_calls, [])


class TestSubStageCompletion(TestCaseWithClient):
    def setUp(self) -> None:
        super().setUp()
        self.a = f.sub_stage(id="a", name="Design Sign-off")
        self.b = f.sub_stage(id="b", name="Supplier Check")
        self.client.required_sub_stages.return_value = [self.a, self.b]

    def validate(self, *progress):  # type: ignore
        return validate_sub_stage_completion(
            f.project(), self.stage, list(progress), self.client
        )

    def test_completed_and_pending(self) -> None:
        result = self.validate(
            f.progress(sub_stage_id="a", status=SubStageStatus.COMPLETED),
            f.progress(sub_stage_id="b", status=SubStageStatus.PENDING),
        )
        self.assertFalse(result.can_advance)
        self.assertListEqual(result.errors, ["Sub-stage pending: Supplier Check"])
        self.assertListEqual(result.required_actions, ["Complete Supplier Check"])

    def test_not_started(self) -> None:
        result = self.validate(
            f.progress(sub_stage_id="a", status=SubStageStatus.SKIPPED)
        )
        self.assertListEqual(result.errors, ["Sub-stage not started: Supplier Check"])
        self.assertListEqual(result.required_actions, ["Start Supplier Check"])

    def test_in_progress_is_a_warning(self) -> None:
        result = self.validate(
            f.progress(sub_stage_id="a", status=SubStageStatus.IN_PROGRESS),
            f.progress(sub_stage_id="b", status=SubStageStatus.COMPLETED),
        )
        self.assertTrue(result.can_advance)
        self.assertListEqual(
            result.warnings, ["Sub-stage in progress: Design Sign-off"]
        )
        self.assertListEqual(result.required_actions, ["Complete Design Sign-off"])

    def test_blocked(self) -> None:
        result = self.validate(
            f.progress(sub_stage_id="a", status=SubStageStatus.BLOCKED),
            f.progress(sub_stage_id="b", status=SubStageStatus.COMPLETED),
        )
        self.assertListEqual(result.errors, ["Sub-stage blocked: Design Sign-off"])
        self.assertListEqual(
            result.required_actions, ["Resolve blockers for Design Sign-off"]
        )

    def test_read_failure(self) -> None:
        self.client.required_sub_stages.side_effect = BackendError()
        result = self.validate()
        self.assertEqual(
            result,
            ExitCriteriaResult.failure("Failed to validate sub-stage completion"),
        )


class TestDocumentRequirements(TestCaseWithClient):
    def setUp(self) -> None:
        super().setUp()
        self.client.document_requirements.return_value = [
            f.requirement(category=f.category(id="c", name="Drawing Package"))
        ]

    def validate(self) -> ExitCriteriaResult:
        return validate_document_requirements(
            f.project(id="p"), self.stage, [], self.client
        )

    def test_missing(self) -> None:
        result = self.validate()
        self.assertListEqual(
            result.errors, ["Required document missing: Drawing Package"]
        )
        self.assertListEqual(result.required_actions, ["Upload Drawing Package"])
        self.client.documents_by_category.assert_called_once_with("p", "c")

    def test_uploaded_but_not_approved(self) -> None:
        self.client.documents_by_category.return_value = [
            f.document(status=DocumentStatus.PENDING)
        ]
        result = self.validate()
        self.assertTrue(result.can_advance)
        self.assertListEqual(
            result.warnings, ["Document pending approval: Drawing Package"]
        )
        self.assertListEqual(
            result.required_actions, ["Get approval for Drawing Package"]
        )

    def test_approved(self) -> None:
        self.client.documents_by_category.return_value = [
            f.document(status=DocumentStatus.REJECTED),
            f.document(status=DocumentStatus.APPROVED),
        ]
        self.assertEqual(self.validate(), ExitCriteriaResult())

    def test_unknown_category(self) -> None:
        self.client.document_requirements.return_value = [f.requirement(category=None)]
        result = self.validate()
        self.assertListEqual(result.errors, ["Required document missing: Unknown"])
        self.assertListEqual(result.required_actions, ["Upload required document"])

    def test_read_failure(self) -> None:
        self.client.documents_by_category.side_effect = BackendError()
        self.assertEqual(
            self.validate(),
            ExitCriteriaResult.failure("Failed to validate document requirements"),
        )


class TestApprovalRequirements(TestCaseWithClient):
    def test_pending_approvals_block(self) -> None:
        self.client.pending_approvals.return_value = [
            f.approval(id="1", approval_chain=f.approval_chain(name="Quality")),
            f.approval(id="2", approval_chain=None),
        ]
        result = validate_approval_requirements(
            f.project(id="p"), self.stage, [], self.client
        )
        self.assertListEqual(
            result.errors, ["Pending approval: Quality", "Pending approval: Unknown"]
        )
        self.assertListEqual(
            result.required_actions,
            ["Get approval for Quality", "Get approval for item"],
        )
        self.client.pending_approvals.assert_called_once_with("p")

    def test_read_failure(self) -> None:
        self.client.pending_approvals.side_effect = BackendError()
        result = validate_approval_requirements(
            f.project(), self.stage, [], self.client
        )
        self.assertListEqual(
            result.errors, ["Failed to validate approval requirements"]
        )


class TestValidatorKind(TestCaseWithClient):
    def test_dispatch(self) -> None:
        inner = Mock(return_value=ExitCriteriaResult(warnings=["w"]))
        fns = {ValidatorKind.PROJECT_STATUS: inner}
        with patch.dict(validators._VALIDATE_FNS, fns):
            result = ValidatorKind.PROJECT_STATUS(
                f.project(), self.stage, [], self.client
            )
        self.assertListEqual(result.warnings, ["w"])
        inner.assert_called_once_with(f.project(), self.stage, [], self.client)

    def test_every_kind_is_registered(self) -> None:
        self.assertSetEqual(set(validators._VALIDATE_FNS), set(ValidatorKind))


class TestComposite(TestCaseWithClient):
    def test_defaults_to_every_kind(self) -> None:
        self.assertListEqual(
            CompositeExitCriteriaValidator().kinds, list(validators.DEFAULT_KINDS)
        )
        self.assertListEqual(
            CompositeExitCriteriaValidator([]).kinds, list(validators.DEFAULT_KINDS)
        )

    def test_empty_requirements_pass(self) -> None:
        result = CompositeExitCriteriaValidator()(
            f.project(), self.stage, [], self.client
        )
        self.assertTrue(result.can_advance)
        self.assertEqual(result, ExitCriteriaResult())

    def test_can_advance_matches_errors(self) -> None:
        cases = [
            f.project(),
            f.project(status=ProjectStatus.ON_HOLD),
            f.project(customer_organization_id=None),
        ]
        for project in cases:
            with self.subTest(project=project):
                result = CompositeExitCriteriaValidator()(
                    project, self.stage, [], self.client
                )
                self.assertIs(result.can_advance, len(result.errors) == 0)

    def test_status_gate(self) -> None:
        self.client.required_sub_stages.return_value = [f.sub_stage(id="a")]
        progress = [f.progress(sub_stage_id="a", status=SubStageStatus.COMPLETED)]
        self.client.documents_by_category.return_value = [f.document()]
        self.client.document_requirements.return_value = [f.requirement()]
        for status in (ProjectStatus.ON_HOLD, ProjectStatus.CANCELLED):
            with self.subTest(status=status):
                result = CompositeExitCriteriaValidator()(
                    f.project(status=status), self.stage, progress, self.client
                )
                self.assertFalse(result.can_advance)
                self.assertEqual(len(result.errors), 1)

    def test_approval_is_global(self) -> None:
        self.client.pending_approvals.return_value = [
            f.approval(entity_type="purchase_order")
        ]
        result = CompositeExitCriteriaValidator()(
            f.project(), self.stage, [], self.client
        )
        self.assertFalse(result.can_advance)
        self.assertListEqual(result.errors, ["Pending approval: Chain name"])

    def test_validator_isolation(self) -> None:
        self.client.pending_approvals.return_value = [f.approval()]
        self.client.document_requirements.return_value = [f.requirement()]
        self.client.documents_by_category.return_value = [
            f.document(status=DocumentStatus.PENDING)
        ]
        broken = Mock(side_effect=RuntimeError("boom"))
        with patch.dict(
            validators._VALIDATE_FNS, {ValidatorKind.SUB_STAGE_COMPLETION: broken}
        ):
            result = CompositeExitCriteriaValidator()(
                f.project(status=ProjectStatus.ON_HOLD), self.stage, [], self.client
            )
        self.assertListEqual(
            result.errors,
            [
                "Project status is on_hold. Must be active to advance stages.",
                GENERIC_ERROR,
                "Pending approval: Chain name",
            ],
        )
        self.assertListEqual(
            result.warnings, ["Document pending approval: Category name"]
        )
        self.assertEqual(result.errors.count(GENERIC_ERROR), 1)

    def test_idempotent(self) -> None:
        self.client.required_sub_stages.return_value = [f.sub_stage(id="a")]
        self.client.pending_approvals.return_value = [f.approval()]
        progress = [f.progress(sub_stage_id="a", status=SubStageStatus.IN_PROGRESS)]
        composite = CompositeExitCriteriaValidator()
        first = composite(f.project(), self.stage, progress, self.client)
        second = composite(f.project(), self.stage, progress, self.client)
        self.assertEqual(first, second)

    def test_subset_of_kinds(self) -> None:
        self.client.pending_approvals.return_value = [f.approval()]
        composite = CompositeExitCriteriaValidator([ValidatorKind.PROJECT_STATUS])
        result = composite(f.project(), self.stage, [], self.client)
        self.assertTrue(result.can_advance)
        self.client.pending_approvals.assert_not_called()

    def test_str(self) -> None:
        composite = CompositeExitCriteriaValidator(
            [ValidatorKind.PROJECT_STATUS, ValidatorKind.APPROVAL_REQUIREMENTS]
        )
        self.assertEqual(
            str(composite),
            "CompositeExitCriteriaValidator(project_status, approval_requirements)",
        )


class TestAcmeBracketRfq(TestCase):
    def test_engineering_review(self) -> None:
        client = create_autospec(Client)
        stage = f.stage(id="review", name="Engineering Review", stage_order=2)
        project = f.project(
            title="Acme Bracket RFQ",
            current_stage_id="review",
            status=ProjectStatus.ACTIVE,
        )
        client.required_sub_stages.return_value = [
            f.sub_stage(
                id="sign-off", name="Design Sign-off", workflow_stage_id="review"
            )
        ]
        progress = [
            f.progress(sub_stage_id="sign-off", status=SubStageStatus.IN_PROGRESS)
        ]
        client.document_requirements.return_value = [
            f.requirement(category=f.category(id="drawings", name="Drawing Package"))
        ]
        client.documents_by_category.return_value = []
        client.pending_approvals.return_value = []

        result = CompositeExitCriteriaValidator()(project, stage, progress, client)

        self.assertFalse(result.can_advance)
        self.assertIn("Required document missing: Drawing Package", result.errors)
        self.assertIn("Sub-stage in progress: Design Sign-off", result.warnings)
        self.assertIn("Upload Drawing Package", result.required_actions)
        self.assertIn("Complete Design Sign-off", result.required_actions)
