from codeagent.schemas.messages import Decision, DecisionKind, ValidationRequest
from codeagent.workflows.validation import InteractiveValidator, auto_approve


def build_request() -> ValidationRequest:
    return ValidationRequest(worker=None, agent_name="agent", thought="compute", code="x = 1\nx")


def interactive(*answers):
    replies = iter(answers)
    shown = []

    def read(prompt):
        try:
            return next(replies)
        except StopIteration:
            raise EOFError from None

    return InteractiveValidator(input_fn=read, output_fn=shown.append), shown


def test_auto_approve():
    assert auto_approve(build_request()) == Decision.approve()


def test_interactive_shows_request_and_approves():
    validator, shown = interactive("a")

    assert validator(build_request()) == Decision.approve()
    assert "Agent: agent" in shown[0]
    assert "x = 1" in shown[0]


def test_interactive_reprompts_on_unknown_choice():
    validator, shown = interactive("zzz", "r")

    assert validator(build_request()) == Decision.reject()
    assert any("Unknown choice" in line for line in shown)


def test_interactive_modify_reads_until_blank_line():
    validator, _ = interactive("m", "y = 2", "y * 3", "")

    decision = validator(build_request())

    assert decision.kind is DecisionKind.MODIFY
    assert decision.code == "y = 2\ny * 3"


def test_interactive_modify_with_no_code_asks_again():
    validator, shown = interactive("m", "", "a")

    assert validator(build_request()) == Decision.approve()
    assert "No code entered." in shown


def test_interactive_feedback():
    validator, _ = interactive("f", "use a loop")
    assert validator(build_request()) == Decision.feedback("use a loop")


def test_interactive_rejects_when_input_closes():
    validator, _ = interactive()
    assert validator(build_request()) == Decision.reject()
