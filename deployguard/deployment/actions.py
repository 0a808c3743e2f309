#!/usr/bin/env python3
"""
Per-component rollback actions.

Each action knows how to capture the component's current revision (for the
pre-rollback backup) and how to move the component to a target revision.
Actions are synchronous and run commands through an executor; the
orchestrator runs them in worker threads.
"""

import json
import os

import structlog

from ..errors import BackupFailure, ComponentRollbackFailure, ConfigurationError, ExecutorError

logger = structlog.get_logger(__name__)

PREVIOUS = 'previous'
REVISION_ANNOTATION = 'deployment.kubernetes.io/revision'


class RollbackAction:
    """Base action; subclasses implement capture_revision() and rollback()."""

    action = None

    def __init__(self, component, descriptor, environment, executor, settings):
        self.component = component
        self.descriptor = descriptor
        self.environment = environment
        self.executor = executor
        self.settings = settings

    def _run(self, command, timeout=None, failure=ComponentRollbackFailure, what="command"):
        try:
            result = self.executor.run(command, timeout=timeout or self.settings.rollout_timeout)
        except ExecutorError as e:
            raise self._error(failure, str(e))
        if not result.ok:
            raise self._error(failure, f"{what} failed (exit {result.returncode}): {result.stderr.strip()}")
        return result.stdout

    def _error(self, failure, detail):
        if failure is BackupFailure:
            return BackupFailure(f"{self.component}: {detail}")
        return ComponentRollbackFailure(self.component, detail)

    def capture_revision(self):
        """Return an artifact reference dict with at least a 'revision' key."""
        raise NotImplementedError

    def rollback(self, revision):
        """Move the component to revision; returns a detail string or raises ComponentRollbackFailure."""
        raise NotImplementedError

    def restore(self, artifact):
        return self.rollback(str(artifact['revision']))

    def history(self):
        """Revisions available on the target itself, as printable text; None when unknown."""
        return None

    def describe(self, revision):
        return f"Would roll back {self.component} ({self.action}) to {revision}"


class KubernetesRollbackAction(RollbackAction):
    """
    kubectl-based rollback of a Deployment.

    'previous' undoes the last rollout, a numeric revision uses
    --to-revision, anything else is treated as an image tag.
    """

    action = 'kubernetes'

    @property
    def deployment(self):
        return self.descriptor['deployment']

    def _kubectl(self, *args):
        return ['kubectl', *args, '-n', self.environment.namespace]

    def capture_revision(self):
        stdout = self._run(self._kubectl('get', 'deployment', self.deployment, '-o', 'json'),
                           failure=BackupFailure, what="kubectl get")
        try:
            manifest = json.loads(stdout)
        except ValueError:
            raise BackupFailure(f"{self.component}: kubectl returned invalid JSON")
        if not isinstance(manifest, dict):
            raise BackupFailure(f"{self.component}: kubectl returned a non-object manifest")
        annotations = (manifest.get('metadata') or {}).get('annotations') or {}
        template = ((manifest.get('spec') or {}).get('template') or {}).get('spec') or {}
        containers = [c for c in template.get('containers') or [] if isinstance(c, dict) and 'name' in c]
        return {
            'action': self.action,
            'deployment': self.deployment,
            'revision': annotations.get(REVISION_ANNOTATION, 'unknown'),
            'images': {c['name']: c.get('image') for c in containers},
        }

    def rollout_command(self, revision):
        deployment_ref = f"deployment/{self.deployment}"
        if revision == PREVIOUS:
            return self._kubectl('rollout', 'undo', deployment_ref)
        if revision.isdigit():
            return self._kubectl('rollout', 'undo', deployment_ref, f"--to-revision={revision}")

        image = self.descriptor.get('image')
        if not image:
            raise ComponentRollbackFailure(
                self.component,
                f"cannot resolve revision '{revision}': not a rollout number and no image configured"
            )
        container = self.descriptor.get('container', self.deployment)
        return self._kubectl('set', 'image', deployment_ref, f"{container}={image}:{revision}")

    def rollback(self, revision):
        self._run(self.rollout_command(revision), what="rollout")
        timeout = int(self.settings.rollout_timeout)
        self._run(
            self._kubectl('rollout', 'status', f"deployment/{self.deployment}", f"--timeout={timeout}s"),
            timeout=timeout + 30, what="rollout status"
        )
        return f"{self.deployment} rolled back to {revision}"

    def restore(self, artifact):
        revision = str(artifact.get('revision', 'unknown'))
        if not revision.isdigit():
            raise ComponentRollbackFailure(self.component, f"snapshot has no rollout revision ({revision})")
        return self.rollback(revision)

    def describe(self, revision):
        try:
            command = ' '.join(self.rollout_command(revision))
        except ComponentRollbackFailure as e:
            return f"Would fail: {e.detail}"
        return f"Would run: {command}"

    def history(self):
        return self._run(self._kubectl('rollout', 'history', f"deployment/{self.deployment}"),
                         what="rollout history").strip()


class StaticAssetsRollbackAction(RollbackAction):
    """
    Re-syncs a frontend bundle from its versioned copy in S3 and invalidates
    the CDN cache. Layout: versions/<rev>/<path> -> <environment>/<path>.
    """

    action = 'static_assets'

    @property
    def bucket(self):
        return self.descriptor['bucket']

    @property
    def path(self):
        return self.descriptor.get('path', '')

    def live_prefix(self):
        return f"s3://{self.bucket}/{self.environment.name}/{self.path}"

    def version_prefix(self, revision):
        return f"s3://{self.bucket}/versions/{revision}/{self.path}"

    def _read_manifest(self, url, failure):
        stdout = self._run(['aws', 's3', 'cp', url, '-'], failure=failure, what="aws s3 cp")
        try:
            data = json.loads(stdout)
        except ValueError:
            raise self._error(failure, f"invalid version manifest at {url}")
        if not isinstance(data, dict):
            raise self._error(failure, f"version manifest at {url} is not a JSON object")
        commit = data.get('commit')
        if commit is not None and not isinstance(commit, dict):
            raise self._error(failure, f"version manifest at {url} has a malformed 'commit' entry")
        revision = (commit or {}).get('sha') or data.get('version')
        if revision is not None and not isinstance(revision, (str, int)):
            raise self._error(failure, f"version manifest at {url} has a malformed revision")
        if not revision:
            raise self._error(failure, f"version manifest at {url} has no commit.sha or version")
        return str(revision)

    def capture_revision(self):
        manifest = self.descriptor.get('version_manifest', 'version.json')
        url = f"{self.live_prefix()}{manifest}"
        return {
            'action': self.action,
            'location': self.live_prefix(),
            'revision': self._read_manifest(url, BackupFailure),
        }

    def deployment_manifests(self):
        """Deployment manifest names under deployments/, oldest first."""
        listing = self._run(['aws', 's3', 'ls', f"s3://{self.bucket}/deployments/"], what="aws s3 ls")
        return sorted(
            line.split()[-1] for line in listing.splitlines()
            if line.strip().endswith('.json')
        )

    def resolve_revision(self, revision):
        if revision != PREVIOUS:
            return revision
        manifests = self.deployment_manifests()
        if len(manifests) < 2:
            raise ComponentRollbackFailure(self.component, "no previous deployment manifest found")
        return self._read_manifest(f"s3://{self.bucket}/deployments/{manifests[-2]}", ComponentRollbackFailure)

    def distribution_id(self):
        if self.descriptor.get('distribution_id'):
            return self.descriptor['distribution_id']
        env_name = self.descriptor.get('distribution_id_env')
        return os.environ.get(env_name) if env_name else None

    def rollback(self, revision):
        resolved = self.resolve_revision(revision)
        self._run(['aws', 's3', 'sync', self.version_prefix(resolved), self.live_prefix(), '--delete'],
                  what="aws s3 sync")

        distribution = self.distribution_id()
        if distribution:
            paths = f"/{self.environment.name}/{self.path}*"
            self._run(['aws', 'cloudfront', 'create-invalidation',
                       '--distribution-id', distribution, '--paths', paths],
                      what="CloudFront invalidation")
        return f"assets synced from {resolved}"

    def describe(self, revision):
        return f"Would sync {self.version_prefix(revision)} -> {self.live_prefix()}"

    def history(self):
        manifests = self.deployment_manifests()
        if not manifests:
            return "no deployment manifests"
        return "\n".join(reversed(manifests))


class CommandRollbackAction(RollbackAction):
    """Opaque rollback through operator-supplied commands; {revision} is substituted."""

    action = 'command'

    def _render(self, command, revision):
        return [part.replace('{revision}', revision) for part in command]

    def capture_revision(self):
        capture = self.descriptor.get('capture_command')
        if not capture:
            return {'action': self.action, 'revision': None}
        stdout = self._run(capture, failure=BackupFailure, what="capture command")
        return {'action': self.action, 'revision': stdout.strip() or None}

    def rollback(self, revision):
        stdout = self._run(self._render(self.descriptor['command'], revision), what="rollback command")
        return stdout.strip().splitlines()[-1] if stdout.strip() else f"command completed for {revision}"

    def describe(self, revision):
        return f"Would run: {' '.join(self._render(self.descriptor['command'], revision))}"


class SequentialRollbackAction(RollbackAction):
    """Ordered sub-steps (e.g. backend then its cache); stops at the first failure."""

    action = 'steps'

    def __init__(self, component, descriptor, environment, executor, settings):
        super().__init__(component, descriptor, environment, executor, settings)
        self.steps = [
            build_action_from_descriptor(component, step, environment, executor, settings)
            for step in descriptor['steps']
        ]

    def capture_revision(self):
        artifacts = [step.capture_revision() for step in self.steps]
        return {
            'action': self.action,
            'revision': artifacts[0].get('revision'),
            'steps': artifacts,
        }

    def rollback(self, revision):
        details = []
        for index, step in enumerate(self.steps, 1):
            try:
                details.append(step.rollback(revision))
            except ComponentRollbackFailure as e:
                raise ComponentRollbackFailure(self.component, f"step {index}/{len(self.steps)}: {e.detail}")
        return '; '.join(details)

    def restore(self, artifact):
        details = []
        for step, step_artifact in zip(self.steps, artifact.get('steps', [])):
            if step_artifact.get('revision') is None:
                continue
            details.append(step.restore(step_artifact))
        return '; '.join(details)

    def describe(self, revision):
        return '; '.join(step.describe(revision) for step in self.steps)

    def history(self):
        parts = [step.history() for step in self.steps]
        return "\n".join(part for part in parts if part) or None


ACTION_TYPES = {
    KubernetesRollbackAction.action: KubernetesRollbackAction,
    StaticAssetsRollbackAction.action: StaticAssetsRollbackAction,
    CommandRollbackAction.action: CommandRollbackAction,
    SequentialRollbackAction.action: SequentialRollbackAction,
}


def build_action_from_descriptor(component_name, descriptor, environment, executor, settings):
    action_type = ACTION_TYPES.get(descriptor.get('action'))
    if action_type is None:
        raise ConfigurationError(f"Unknown rollback action for {component_name}: {descriptor.get('action')}")
    return action_type(component_name, descriptor, environment, executor, settings)


def build_action(component, environment, executor, settings):
    """Factory: the component's rollback action, or None if it has no descriptor."""
    if not component.can_rollback:
        return None
    return build_action_from_descriptor(component.name, component.rollback, environment, executor, settings)
