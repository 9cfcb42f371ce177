from vm_pipeline.models import Stage, Workflow


TEMPLATE_STAGES: list[Stage] = [
    Stage.VALIDATE,
    Stage.PREPARE_ANSWER_FILE,
    Stage.START_FILE_SERVER,
    Stage.CREATE_VM,
    Stage.CONFIGURE_SERIAL_CONSOLE,
    Stage.RESTART_CONTROL_PLANE,
    Stage.START_VM,
    Stage.RUN_INSTALL_DRIVER,
    Stage.STOP_VM,
    Stage.DETACH_INSTALL_MEDIA,
    Stage.RESTART_CONTROL_PLANE,
    Stage.START_VM,
    Stage.AWAIT_IP,
    Stage.INJECT_SSH_KEY,
    Stage.STOP_VM,
    Stage.DONE,
]

CLONE_STAGES: list[Stage] = [
    Stage.CHECK_TEMPLATE_EXISTS,
    Stage.CHECK_TARGET_NAME_FREE,
    Stage.STOP_TEMPLATE_IF_RUNNING,
    Stage.CLONE,
    Stage.RANDOMIZE_MAC,
    Stage.APPLY_RESOURCE_OVERRIDES,
    Stage.RESTART_CONTROL_PLANE,
    Stage.START_VM,
    Stage.AWAIT_IP,
    Stage.VERIFY_SSH,
    Stage.BOOTSTRAP_AND_TEST,
    Stage.REPORT_AND_PERSIST_RESULT,
    Stage.DESTROY_VM,
]

PROVISION_STAGES: list[Stage] = [
    Stage.PREFLIGHT,
    Stage.UPDATE_SYSTEM,
    Stage.INSTALL_ESSENTIALS,
    Stage.CLONE_REPOSITORY,
    Stage.INSTALL_TOOLCHAINS,
    Stage.RUN_TESTS,
    Stage.PERSIST_RESULT,
]

DESTROY_STAGES: list[Stage] = [
    Stage.CHECK_EXISTS,
    Stage.STOP_IF_RUNNING,
    Stage.DELETE,
]

WORKFLOW_STAGES: dict[Workflow, list[Stage]] = {
    Workflow.TEMPLATE: TEMPLATE_STAGES,
    Workflow.CLONE: CLONE_STAGES,
    Workflow.PROVISION: PROVISION_STAGES,
    Workflow.DESTROY: DESTROY_STAGES,
}

# Stages a workflow may skip; everything else is mandatory.
OPTIONAL_STAGES: dict[Workflow, set[Stage]] = {
    Workflow.TEMPLATE: set(),
    Workflow.CLONE: {
        Stage.AWAIT_IP,
        Stage.VERIFY_SSH,
        Stage.BOOTSTRAP_AND_TEST,
        Stage.REPORT_AND_PERSIST_RESULT,
        Stage.DESTROY_VM,
    },
    Workflow.PROVISION: {
        Stage.CLONE_REPOSITORY,
        Stage.INSTALL_TOOLCHAINS,
        Stage.RUN_TESTS,
        Stage.PERSIST_RESULT,
    },
    Workflow.DESTROY: {Stage.STOP_IF_RUNNING},
}


def can_transition(workflow: Workflow, position: int, target: Stage) -> tuple[bool, int]:
    stages = WORKFLOW_STAGES[workflow]
    optional = OPTIONAL_STAGES[workflow]
    for index in range(position + 1, len(stages)):
        if stages[index] == target:
            return True, index
        if stages[index] not in optional:
            return False, position
    return False, position
