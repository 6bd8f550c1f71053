"""
Update planning and rollout for compose stacks.

A plan is computed from the stack's configuration text without parsing it:
1. If the container's full image reference occurs literally, every
   occurrence is replaced with the same repository at the new version.
2. Otherwise the image may be written as repo:${VAR:-default}. The
   sibling .env file is then patched on the VAR=<current tag> line.

The new version string is synthesized so that deployment specific suffixes
survive: 0.15.4-alpine updated to upstream v0.16.2 becomes 0.16.2-alpine.

Applying a plan writes the patched text, then runs compose pull, down and
up -d for file-addressed stacks. This is best-effort: on a failed compose
command the previous text is restored and the stack is brought back up,
but nothing guarantees the old state is fully recovered.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import httpx
from sqlalchemy.orm import Session

from database import CandidateVersion, ComposeStack, ManagedContainer, UpdateAttempt, utcnow
from deployment.compose_runner import ComposeRunner, DockerCommandError
from deployment.config_storage import FileConfigStorage, env_file_for
from deployment.portainer_client import PortainerClient, PortainerError
from updates.version_helper import is_newer, pattern_body, sort_versions, split_image

logger = logging.getLogger(__name__)

MAX_DOCKER_ROLLBACK_ATTEMPTS = 3

# repo:${VERSION_VAR:-default}
ENV_REFERENCE_PATTERN = re.compile(r'\$\{([a-zA-Z0-9\-_]+):-[a-zA-Z0-9\-_.]+\}')

OutputCallback = Callable[[str], None]


class PatchSynthesisError(Exception):
    """Neither the upstream tag shape nor the deployed version shape could be spliced"""
    pass


class PlanNotActionableError(Exception):
    """Apply was called with a plan that has no mutation"""
    pass


@dataclass
class EnvMutation:
    env_file: str
    original_content: str
    current_line: str
    target_line: str
    line_start: int
    line_end: int

    @property
    def patched_content(self) -> str:
        """original_content with only the matched line replaced"""
        return self.original_content[:self.line_start] + self.target_line + self.original_content[self.line_end:]


@dataclass
class UpdatePlan:
    """
    Ordered human readable steps plus the concrete text mutation.

    A plan without mutation (no image reference or version variable found)
    is informative only. An unavailable plan carries the reason instead.
    """
    container_id: int
    stack_id: int
    stack_name: str
    steps: List[str] = field(default_factory=list)
    target_candidate_id: Optional[int] = None
    target_version: Optional[str] = None
    new_version: Optional[str] = None
    config_file: Optional[str] = None
    original_content: Optional[str] = None
    current_image: Optional[str] = None
    resulting_image: Optional[str] = None
    occurrences: int = 0
    env: Optional[EnvMutation] = None
    shared_container_ids: List[int] = field(default_factory=list)
    unavailable_reason: Optional[str] = None

    @classmethod
    def unavailable(cls, container: ManagedContainer, reason: str) -> 'UpdatePlan':
        return cls(
            container_id=container.id,
            stack_id=container.stack_id,
            stack_name=container.stack.stack_name if container.stack else '',
            unavailable_reason=reason,
        )

    @property
    def has_mutation(self) -> bool:
        return self.resulting_image is not None or self.env is not None

    @property
    def is_actionable(self) -> bool:
        return self.unavailable_reason is None and self.has_mutation

    @property
    def remote_hosted(self) -> bool:
        return self.config_file is None


def synthesize_version(current_version: str, target_tag: str,
                       upstream_pattern: Optional[str], version_pattern: Optional[str]) -> str:
    """
    Splice the target release into the deployed version string.

    First the upstream tag shape is searched inside the current version and
    replaced with the target tag (without v). Failing that, the deployed
    version shape is searched inside the target tag and the captured part
    replaces the current version's match.

    Raises:
        PatchSynthesisError: neither direction matched
    """
    if upstream_pattern:
        found = re.search(pattern_body(upstream_pattern), current_version)
        if found:
            return current_version.replace(found.group(0), target_tag.lstrip('v'))

    if version_pattern:
        shape = '(' + version_pattern.lstrip('^').rstrip('$') + ')'
        in_target = re.search(shape, target_tag)
        if in_target:
            in_current = re.search(version_pattern, current_version)
            if in_current:
                return current_version.replace(in_current.group(0), in_target.group(1))

    raise PatchSynthesisError(
        f"Could not derive a new version from current {current_version} and release {target_tag}"
    )


def newest_candidate(container: ManagedContainer) -> Optional[CandidateVersion]:
    """Newest non-ignored candidate by version ordering"""
    by_version = {c.version_number: c for c in container.candidate_versions if not c.ignored}
    ordered = sort_versions(by_version, reverse=True)
    return by_version[ordered[0]] if ordered else None


def _prune_candidates(container: ManagedContainer, applied_id: Optional[int], applied_version: str) -> int:
    """Drop the applied candidate and everything at or below it"""
    keep = [
        c for c in container.candidate_versions
        if c.id != applied_id
        and c.version_number != applied_version
        and not is_newer(applied_version, c.version_number)
    ]
    removed = len(container.candidate_versions) - len(keep)
    container.candidate_versions = keep
    return removed


class UpdatePlanner:
    """Plans and applies version updates for containers"""

    def __init__(self, storage: FileConfigStorage, runner: ComposeRunner,
                 portainer: Optional[PortainerClient] = None):
        self.storage = storage
        self.runner = runner
        self.portainer = portainer

    async def _load_configuration(self, stack: ComposeStack, steps: List[str]) -> Optional[str]:
        if not stack.has_addressing:
            logger.warning(f"Stack {stack.stack_name} has neither a compose file nor remote hosting")
            return None

        if stack.config_file:
            if not await self.storage.exists(stack.config_file):
                logger.warning(f"Compose file {stack.config_file} for stack {stack.stack_name} does not exist")
                return None
            steps.append(f"In folder: {Path(stack.config_file).parent}")
            return await self.storage.read_text(stack.config_file)

        if stack.remote_hosted and self.portainer is not None and self.portainer.is_configured:
            content = await self.portainer.get_stack_content(stack.stack_name)
            if content is not None:
                steps.append("Using Portainer-managed stack file for update")
            return content

        return None

    async def plan(self, session: Session, container: ManagedContainer,
                   target: Optional[CandidateVersion] = None) -> UpdatePlan:
        """
        Compute the update plan for moving a container to a candidate version.

        Raises:
            PatchSynthesisError: the new version string could not be derived
        """
        if not container.version or not container.version_regex or not container.github_version_regex:
            return UpdatePlan.unavailable(container, "Container has no recognizable version")

        target = target or newest_candidate(container)
        if target is None:
            return UpdatePlan.unavailable(container, "No newer version available")

        stack = container.stack
        steps: List[str] = []
        content = await self._load_configuration(stack, steps)
        if content is None:
            return UpdatePlan.unavailable(
                container, f"Configuration of stack {stack.stack_name} is not reachable"
            )

        new_version = synthesize_version(
            container.version, target.version_number,
            container.github_version_regex, container.version_regex,
        )

        plan = UpdatePlan(
            container_id=container.id,
            stack_id=stack.id,
            stack_name=stack.stack_name,
            steps=steps,
            target_candidate_id=target.id,
            target_version=target.version_number,
            new_version=new_version,
            config_file=stack.config_file,
            original_content=content,
            current_image=container.target_image,
        )

        repository, current_tag = split_image(container.target_image)
        plan.occurrences = content.count(container.target_image)

        if plan.occurrences > 0:
            plan.resulting_image = f"{repository}:{new_version}"
            steps.append(
                f"Will replace {plan.occurrences} occurrences of {container.target_image} "
                f"and replace them with {plan.resulting_image}"
            )
        else:
            reference = next(
                (m for m in ENV_REFERENCE_PATTERN.finditer(content) if f"{repository}:{m.group(0)}" in content),
                None,
            )
            if reference is not None:
                if not stack.config_file:
                    logger.warning(f"Cannot update .env file for Portainer-managed stack {stack.stack_name}")
                    return UpdatePlan.unavailable(
                        container, f"Cannot update .env file for Portainer-managed stack {stack.stack_name}"
                    )
                await self._plan_env_mutation(session, plan, container, reference, current_tag, content)

        steps.append(f"Pull images for stack {stack.stack_name} and restart")
        return plan

    async def _plan_env_mutation(self, session: Session, plan: UpdatePlan, container: ManagedContainer,
                                 reference: re.Match, current_tag: Optional[str], content: str):
        env_file = env_file_for(plan.config_file)
        if current_tag is None or not await self.storage.exists(env_file):
            logger.info(f"{container.name} uses {reference.group(0)} but {env_file} has no usable value")
            return

        env_content = await self.storage.read_text(env_file)
        variable = reference.group(1)
        line = re.search(rf'(?m)^{re.escape(variable)}={re.escape(current_tag)}(?=[ \t]*\r?$)', env_content)
        if not line:
            logger.info(f"No {variable}={current_tag} line in {env_file}")
            return

        plan.env = EnvMutation(
            env_file=str(env_file),
            original_content=env_content,
            current_line=line.group(0),
            target_line=f"{variable}={plan.new_version}",
            line_start=line.start(),
            line_end=line.end(),
        )
        plan.steps.append(f"Looking at {env_file} .env file")
        plan.steps.append(f"Will replace {plan.env.current_line} with {plan.env.target_line} in the env file")

        app = container.multi_container_app
        if app is not None:
            shared = [
                member for member in app.containers
                if member.id != container.id
                and f"{member.image_repository}:{reference.group(0)}" in content
            ]
            if shared:
                plan.shared_container_ids = [member.id for member in shared]
                plan.steps.append(
                    f"This update will also affect containers: {', '.join(member.name for member in shared)}"
                )

    async def _write_mutation(self, plan: UpdatePlan):
        if plan.resulting_image is not None:
            patched = plan.original_content.replace(plan.current_image, plan.resulting_image)
            if plan.config_file:
                await self.storage.write_text(plan.config_file, patched)
            else:
                await self.portainer.update_stack_content(plan.stack_name, patched)
        elif plan.env is not None:
            await self.storage.write_text(
                plan.env.env_file,
                plan.env.patched_content,
            )

    async def _restore(self, plan: UpdatePlan):
        """Best-effort rollback of the file mutation"""
        try:
            if plan.resulting_image is not None and plan.config_file:
                await self.storage.write_text(plan.config_file, plan.original_content)
            elif plan.env is not None:
                await self.storage.write_text(plan.env.env_file, plan.env.original_content)
        except OSError as e:
            logger.error(f"Could not restore configuration of stack {plan.stack_name}: {e}")

    async def apply(self, session: Session, plan: UpdatePlan,
                    on_output: Optional[OutputCallback] = None) -> UpdateAttempt:
        """
        Write the mutation, redeploy the stack and commit the new baseline.

        Raises:
            PlanNotActionableError: the plan has nothing to apply
            DockerCommandError: a compose command failed (after rollback attempts)
            PortainerError: the remote stack update was rejected
            httpx.HTTPError, OSError: the new configuration could not be written
        """
        if not plan.is_actionable:
            raise PlanNotActionableError(plan.unavailable_reason or "Plan has no mutation to apply")

        started_at = utcnow()
        used_plan = ', '.join(plan.steps)
        stdout_parts: List[str] = []
        stderr_parts: List[str] = []

        try:
            await self._write_mutation(plan)
        except (PortainerError, httpx.HTTPError, OSError) as e:
            failed_step = 'write configuration' if plan.config_file else 'portainer update'
            logger.error(f"Could not write the new configuration of stack {plan.stack_name}: {e}")
            self._record_attempt(session, plan, started_at, used_plan, None, str(e), 1, failed_step)
            session.commit()
            raise

        if plan.config_file:
            turned_off = False
            try:
                for subcommand in ('pull', 'down', 'up -d'):
                    result = await self.runner.run(self._stack(session, plan), subcommand, on_output)
                    label = subcommand.split()[0].upper()
                    stdout_parts.append(f"[{label} STDOUT]\n{result.stdout}\nExit code: {result.exit_code}")
                    stderr_parts.append(f"[{label} STDERR]\n{result.stderr}\nExit code: {result.exit_code}")
                    if subcommand == 'down':
                        turned_off = True
            except DockerCommandError as e:
                logger.error(f"Failed to update stack {plan.stack_name}, rolling back to previous file state")
                await self._restore(plan)

                stdout = '\n'.join([*stdout_parts, e.stdout or ''])
                stderr = '\n'.join([*stderr_parts, e.stderr or ''])
                if turned_off:
                    rollback_out, rollback_err = await self._bring_back_up(session, plan, on_output)
                    stdout += rollback_out
                    stderr += rollback_err

                self._record_attempt(session, plan, started_at, used_plan, stdout, stderr, e.exit_code, e.command)
                session.commit()
                raise

        removed = self._commit_baseline(session, plan)
        attempt = self._record_attempt(
            session, plan, started_at, used_plan,
            '\n'.join(stdout_parts) or None, '\n'.join(stderr_parts) or None, 0, None,
        )
        session.commit()

        logger.info(
            f"Updated {plan.stack_name} through {removed} versions to {plan.new_version} ({plan.target_version})"
        )
        return attempt

    def _stack(self, session: Session, plan: UpdatePlan) -> ComposeStack:
        return session.get(ComposeStack, plan.stack_id)

    async def _bring_back_up(self, session: Session, plan: UpdatePlan, on_output: Optional[OutputCallback]):
        stdout = ''
        stderr = ''
        for attempt in range(1, MAX_DOCKER_ROLLBACK_ATTEMPTS + 1):
            result = await self.runner.run(self._stack(session, plan), 'up -d', on_output, check=False)
            stdout += f"\n[ROLLBACK ATTEMPT {attempt} STDOUT]\n{result.stdout}\nExit code: {result.exit_code}"
            stderr += f"\n[ROLLBACK ATTEMPT {attempt} STDERR]\n{result.stderr}\nExit code: {result.exit_code}"
            if result.succeeded:
                logger.info(f"Stack {plan.stack_name} is back up after rollback attempt {attempt}")
                return stdout, stderr
        logger.error(f"Stack {plan.stack_name} could not be brought back up after {MAX_DOCKER_ROLLBACK_ATTEMPTS} attempts")
        return stdout, stderr

    def _record_attempt(self, session: Session, plan: UpdatePlan, started_at, used_plan: str,
                        stdout: Optional[str], stderr: Optional[str], exit_code: int,
                        failed_command: Optional[str]) -> UpdateAttempt:
        attempt = UpdateAttempt(
            container_id=plan.container_id,
            stack_id=plan.stack_id,
            started_at=started_at,
            ended_at=utcnow(),
            used_plan=used_plan,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            failed_command=failed_command,
        )
        session.add(attempt)
        return attempt

    def _commit_baseline(self, session: Session, plan: UpdatePlan) -> int:
        """
        Record the new version on the container and everything sharing its
        image, then clear candidates at or below the applied version.
        """
        container = session.get(ManagedContainer, plan.container_id)
        removed = _prune_candidates(container, plan.target_candidate_id, plan.target_version)

        related = session.query(ManagedContainer).filter(
            ManagedContainer.stack_id == plan.stack_id,
            ManagedContainer.id != plan.container_id,
            ManagedContainer.target_image == plan.current_image,
        ).all()

        repository, _ = split_image(plan.current_image)
        new_image = plan.resulting_image or f"{repository}:{plan.new_version}"

        for member in related:
            member.target_image = new_image
            member.version = plan.new_version
            _prune_candidates(member, plan.target_candidate_id, plan.target_version)

        for member_id in plan.shared_container_ids:
            member = session.get(ManagedContainer, member_id)
            if member is None or member in related:
                continue
            member.target_image = f"{member.image_repository}:{plan.new_version}"
            member.version = plan.new_version
            _prune_candidates(member, plan.target_candidate_id, plan.target_version)

        container.target_image = new_image
        container.version = plan.new_version

        session.flush()
        orphans = session.query(CandidateVersion).filter(~CandidateVersion.containers.any()).all()
        for orphan in orphans:
            session.delete(orphan)

        return removed

    async def update(self, session: Session, container: ManagedContainer,
                     target: Optional[CandidateVersion] = None,
                     on_output: Optional[OutputCallback] = None) -> UpdatePlan:
        """Plan and apply in one go, returning the applied plan"""
        plan = await self.plan(session, container, target)
        if not plan.is_actionable:
            raise PlanNotActionableError(plan.unavailable_reason or "Could not find anything to update")
        for step in plan.steps:
            if on_output:
                on_output(step)
        await self.apply(session, plan, on_output)
        return plan
