import io
import os
import json
import shutil
import tempfile
import subprocess
import unittest

from unittest import mock

from click.testing import CliRunner

from mcpreview.core import *
from mcpreview.pack import Entity
from mcpreview.blockbench import Renderer
from mcpreview.comment import *
from mcpreview.config import Settings, resolve_pack_path, pack_prefix
from mcpreview.git import checkout, upload_images
from mcpreview.github import ActionContext, GitHubClient, get_changed_files, ACT_CHANGED_FILES
from mcpreview.renderer import generate_projects, clear_directory, render_projects, run
from mcpreview.reporting import *
from mcpreview import cli

CONTENT = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'content')
RP = os.path.join(CONTENT, 'rp')


def completed(returncode=0, stdout=''):
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr='')


## ------- ##
## Comment ##
## ------- ##
class TestComment(unittest.TestCase):
    def test_safe_filename(self):
        self.assertEqual(to_safe_filename('minecraft:creeper'), 'minecraft_creeper')
        self.assertEqual(to_safe_filename('my pack/ghost v2'), 'my_pack_ghost_v2')
        self.assertEqual(image_name('custom:ghost', 'base'), 'custom_ghost.base.png')

    def test_rows(self):
        entities = [
            Entity('minecraft:creeper', 'entity/creeper.entity.json'),
            Entity('minecraft:zombie', 'entity/zombie.entity.json'),
            Entity('custom:ghost', 'entity/ghost.entity.json'),
        ]
        urls = {
            'minecraft_creeper.base.png': 'https://img/creeper.base.png',
            'minecraft_creeper.head.png': 'https://img/creeper.head.png',
            'minecraft_zombie.head.png': 'https://img/zombie.head.png',
        }
        rows = build_rows(entities, urls)

        self.assertEqual(rows, [
            ImageRow('minecraft:creeper', 'https://img/creeper.base.png', 'https://img/creeper.head.png'),
            ImageRow('minecraft:zombie', '', 'https://img/zombie.head.png'),
        ])

    def test_rows_sharing_images(self):
        entities = [
            Entity('custom:ghost', 'entity/a.json'),
            Entity('custom:ghost', 'entity/b.json'),
            Entity('custom_ghost', 'entity/c.json'),
        ]
        rows = build_rows(entities, {'custom_ghost.head.png': 'https://img/ghost.head.png'})
        self.assertEqual(rows, [ImageRow('custom:ghost', '', 'https://img/ghost.head.png')])

    def test_body(self):
        body = build_comment_body([
            ImageRow('minecraft:creeper', 'https://img/a.png', 'https://img/b.png'),
            ImageRow('minecraft:zombie', '', 'https://img/c.png'),
        ])
        lines = body.splitlines()

        self.assertEqual(lines[0], '### Minecraft Model Preview')
        self.assertEqual(lines[2], '| Entity | Before | After |')
        self.assertEqual(
            lines[4],
            '| `minecraft:creeper` | <img src="https://img/a.png" width="200" /> | <img src="https://img/b.png" width="200" /> |'
        )
        self.assertEqual(lines[5], '| `minecraft:zombie` |   | <img src="https://img/c.png" width="200" /> |')
        self.assertTrue(body.endswith('\n'))


## ------ ##
## GitHub ##
## ------ ##
def response(status_code=200, payload=None):
    result = mock.MagicMock()
    result.status_code = status_code
    result.json.return_value = payload
    result.text = json.dumps(payload)
    return result


class TestGitHubClient(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.MagicMock()
        self.session.headers = {}
        self.client = GitHubClient('secret', session=self.session)

    def test_headers(self):
        self.assertEqual(self.session.headers['Authorization'], 'token secret')
        self.assertEqual(self.session.headers['Accept'], 'application/vnd.github.v3+json')

    def test_pagination(self):
        first = [{'filename': f'file_{i}.json'} for i in range(100)]
        second = [{'filename': 'last.json'}]
        self.session.request.side_effect = [response(payload=first), response(payload=second)]

        files = self.client.list_pull_request_files('owner/repo', 7)

        self.assertEqual(len(files), 101)
        self.assertEqual(files[-1], 'last.json')
        self.assertEqual(self.session.request.call_count, 2)
        method, url = self.session.request.call_args.args
        self.assertEqual(method, 'GET')
        self.assertEqual(url, 'https://api.github.com/repos/owner/repo/pulls/7/files')
        self.assertEqual(self.session.request.call_args.kwargs['params'], {'per_page': 100, 'page': 2})

    def test_create_comment(self):
        self.session.request.return_value = response(201, {'id': 1})
        self.assertEqual(self.client.create_comment('owner/repo', 7, 'hello'), {'id': 1})

        method, url = self.session.request.call_args.args
        self.assertEqual(method, 'POST')
        self.assertTrue(url.endswith('/repos/owner/repo/issues/7/comments'))
        self.assertEqual(self.session.request.call_args.kwargs['json'], {'body': 'hello'})

    def test_error(self):
        self.session.request.return_value = response(404, {'message': 'Not Found'})
        with self.assertRaises(GitHubError) as context:
            self.client.list_pull_request_files('owner/repo', 7)
        self.assertEqual(context.exception.status_code, 404)


class TestActionContext(unittest.TestCase):
    def setUp(self) -> None:
        self.directory = tempfile.mkdtemp()
        self.event_path = os.path.join(self.directory, 'event.json')
        save_json(self.event_path, {
            'number': 12,
            'pull_request': {'number': 12, 'base': {'ref': 'main'}, 'head': {'ref': 'feature/new-mob'}},
        })

    def tearDown(self) -> None:
        shutil.rmtree(self.directory)

    def test_from_environment(self):
        context = ActionContext.from_environment({
            'GITHUB_EVENT_PATH': self.event_path,
            'GITHUB_REPOSITORY': 'owner/repo',
            'GITHUB_WORKSPACE': self.directory,
        })
        self.assertEqual(context.pr_number, 12)
        self.assertEqual(context.require_refs(), ('main', 'feature/new-mob'))
        self.assertEqual((context.owner, context.repo), ('owner', 'repo'))
        self.assertEqual(context.workspace, self.directory)
        self.assertFalse(context.act)

    def test_missing_refs(self):
        context = ActionContext.from_environment({'GITHUB_REPOSITORY': 'owner/repo'})
        self.assertIsNone(context.pr_number)
        with self.assertRaises(ConfigurationError):
            context.require_refs()

    def test_changed_files_under_act(self):
        client = mock.MagicMock()
        files = get_changed_files(ActionContext(act=True), client, reporter=SilentReporter())
        self.assertEqual(files, ACT_CHANGED_FILES)
        client.list_pull_request_files.assert_not_called()

    def test_changed_files_without_pull_request(self):
        reporter = RecordingReporter()
        self.assertEqual(get_changed_files(ActionContext(), mock.MagicMock(), reporter=reporter), [])
        self.assertEqual(len(reporter.warnings), 1)


## --- ##
## Git ##
## --- ##
class TestGit(unittest.TestCase):
    @mock.patch('mcpreview.git.subprocess.run')
    def test_plain_checkout(self, run_process):
        run_process.return_value = completed()
        checkout('main', cwd='/repo')
        run_process.assert_called_once()
        self.assertEqual(run_process.call_args.args[0], ['git', 'checkout', 'main'])
        self.assertEqual(run_process.call_args.kwargs['cwd'], '/repo')

    @mock.patch('mcpreview.git.subprocess.run')
    def test_checkout_tracks_origin(self, run_process):
        run_process.side_effect = [completed(1), completed(0)]
        checkout('feature', cwd='/repo')
        self.assertEqual(run_process.call_args.args[0], ['git', 'checkout', '-B', 'feature', '--track', 'origin/feature'])

    @mock.patch('mcpreview.git.subprocess.run')
    def test_checkout_fetches_last(self, run_process):
        run_process.side_effect = [completed(1), completed(1), completed(), completed(), completed()]
        checkout('feature', cwd='/repo')
        commands = [call.args[0][1:] for call in run_process.call_args_list]
        self.assertEqual(commands[2:], [
            ['config', 'checkout.defaultRemote', 'origin'],
            ['fetch', 'origin'],
            ['checkout', 'feature'],
        ])

    @mock.patch('mcpreview.git.subprocess.run')
    def test_checkout_failure(self, run_process):
        run_process.return_value = completed(1)
        with self.assertRaises(GitError):
            checkout('feature', cwd='/repo')


class TestUploadImages(unittest.TestCase):
    def setUp(self) -> None:
        self.image_dir = tempfile.mkdtemp()
        for name in ('minecraft_creeper.base.png', 'minecraft_creeper.head.png'):
            with open(os.path.join(self.image_dir, name), 'wb') as image:
                image.write(b'png')
        os.makedirs(os.path.join(self.image_dir, 'projects'))
        self.commands = []
        self.copied = None

    def tearDown(self) -> None:
        shutil.rmtree(self.image_dir)

    def fake_git(self, remote_heads=''):
        def run_git(*args, cwd=None, check=True):
            self.commands.append(args)
            if args[0] == 'commit':
                self.copied = sorted(os.listdir(os.path.join(cwd, 'pr-7')))
            if args[0] == 'ls-remote':
                return completed(stdout=remote_heads)
            if args[0] == 'rev-parse':
                return completed(stdout='abc123\n')
            return completed()
        return run_git

    def test_new_branch(self):
        with mock.patch('mcpreview.git.run_git', side_effect=self.fake_git()):
            urls = upload_images(self.image_dir, 'owner/repo', 7, cwd='/repo', reporter=SilentReporter())

        self.assertEqual(urls, {
            'minecraft_creeper.base.png': 'https://raw.githubusercontent.com/owner/repo/abc123/pr-7/minecraft_creeper.base.png',
            'minecraft_creeper.head.png': 'https://raw.githubusercontent.com/owner/repo/abc123/pr-7/minecraft_creeper.head.png',
        })
        self.assertEqual(self.copied, ['minecraft_creeper.base.png', 'minecraft_creeper.head.png'])
        self.assertIn(('remote', 'add', 'origin-mc-model-preview-images', 'https://github.com/owner/repo.git'), self.commands)
        self.assertIn(('checkout', '--orphan', 'mc-model-preview-images'), self.commands)
        self.assertIn(('commit', '-m', 'Add images for PR #7'), self.commands)
        self.assertEqual(self.commands[-1][:2], ('worktree', 'remove'))

    def test_existing_branch(self):
        heads = 'abc\trefs/heads/mc-model-preview-images\n'
        with mock.patch('mcpreview.git.run_git', side_effect=self.fake_git(heads)):
            upload_images(self.image_dir, 'owner/repo', 7, branch='mc-model-preview-images', cwd='/repo', reporter=SilentReporter())

        adds = [command for command in self.commands if command[:2] == ('worktree', 'add')]
        self.assertEqual(adds[0][2], '-B')
        self.assertEqual(adds[0][-1], 'origin-mc-model-preview-images/mc-model-preview-images')
        self.assertNotIn(('checkout', '--orphan', 'mc-model-preview-images'), self.commands)

    def test_no_images(self):
        empty = tempfile.mkdtemp()
        try:
            with mock.patch('mcpreview.git.run_git') as run_git:
                self.assertEqual(upload_images(empty, 'owner/repo', 7, reporter=SilentReporter()), {})
            run_git.assert_not_called()
        finally:
            shutil.rmtree(empty)


## ------ ##
## Config ##
## ------ ##
class TestConfig(unittest.TestCase):
    def test_pack_path_inside_workspace(self):
        reporter = RecordingReporter()
        path = resolve_pack_path('/work', 'packs/rp', reporter=reporter)
        self.assertEqual(path, os.path.abspath('/work/packs/rp'))
        self.assertEqual(reporter.warnings, [])

    def test_pack_path_outside_workspace(self):
        reporter = RecordingReporter()
        self.assertEqual(resolve_pack_path('/work', '../elsewhere', reporter=reporter), os.path.abspath('/work'))
        self.assertEqual(len(reporter.warnings), 1)

    def test_sibling_with_shared_prefix(self):
        reporter = RecordingReporter()
        self.assertEqual(resolve_pack_path('/work', '../workshop', reporter=reporter), os.path.abspath('/work'))

    def test_pack_prefix(self):
        self.assertEqual(pack_prefix('/work', '/work'), '')
        self.assertEqual(pack_prefix('/work', '/work/packs/rp'), 'packs/rp')

    def test_defaults(self):
        settings = Settings()
        self.assertEqual(settings.resource_pack_path, '.')
        self.assertEqual(settings.image_branch, 'mc-model-preview-images')
        self.assertEqual(settings.render_timeout, 120)


## --------- ##
## Reporting ##
## --------- ##
class TestActionsReporter(unittest.TestCase):
    def test_workflow_commands(self):
        stream = io.StringIO()
        reporter = ActionsReporter(stream=stream)

        with section('Parsing', reporter):
            reporter.info('plain')
            reporter.warning('100% broken\nsecond line')
            reporter.verbose('hidden')
        reporter.error('failed')

        self.assertEqual(stream.getvalue().splitlines(), [
            '::group::Parsing',
            'plain',
            '::warning::100%25 broken%0Asecond line',
            '::endgroup::',
            '::error::failed',
        ])

    def test_debug(self):
        stream = io.StringIO()
        ActionsReporter(stream=stream, debug=True).verbose('shown')
        self.assertEqual(stream.getvalue(), '::debug::shown\n')


## -------- ##
## Pipeline ##
## -------- ##
class FakeRenderer(Renderer):
    def __init__(self, failing=()):
        self.rendered = []
        self.failing = failing

    def render(self, project, name):
        if name in self.failing:
            raise RenderError(f'Could not render {name}')
        self.rendered.append(name)
        return b'\x89PNG' + name.encode()


def fake_upload(image_dir, repository, pr_number, branch=None, cwd=None, reporter=None):
    return {
        name: f'https://img/{repository}/{pr_number}/{name}'
        for name in sorted(os.listdir(image_dir))
        if name.endswith('.png')
    }


class TestProjectsAndRendering(unittest.TestCase):
    def setUp(self) -> None:
        self.directory = tempfile.mkdtemp()
        self.reporter = RecordingReporter()

    def tearDown(self) -> None:
        shutil.rmtree(self.directory)

    def test_generate_projects(self):
        entities = [
            Entity('minecraft:pig', 'entity/pig.entity.json',
                   geometry_files=('models/entity/pig.geo.json',), geometry_identifiers=('geometry.pig.v1.8',)),
            Entity('custom:ghost', 'entity/ghost.entity.json'),
        ]
        projects = generate_projects(entities, RP, 'head', reporter=self.reporter)

        self.assertEqual(list(projects), ['minecraft_pig.head'])
        self.assertEqual(len(self.reporter.warnings), 1)
        self.assertIn('custom:ghost', self.reporter.warnings[0])

    def test_colliding_keys(self):
        pig = dict(geometry_files=('models/entity/pig.geo.json',), geometry_identifiers=('geometry.pig.v1.8',))
        entities = [
            Entity('custom:pig', 'entity/a.json', **pig),
            Entity('custom_pig', 'entity/b.json', **pig),
        ]
        projects = generate_projects(entities, RP, 'base', reporter=self.reporter)

        self.assertEqual(list(projects), ['custom_pig.base'])
        self.assertEqual(projects['custom_pig.base']['name'], 'custom:pig')
        self.assertEqual(len(self.reporter.warnings), 1)
        self.assertIn('custom_pig', self.reporter.warnings[0])

    def test_render_projects(self):
        renderer = FakeRenderer(failing=('b.head',))
        written = render_projects({'a.head': {}, 'b.head': {}}, renderer, self.directory, reporter=self.reporter)

        self.assertEqual(written, ['a.head.png'])
        self.assertEqual(sorted(os.listdir(self.directory)), ['a.head.png'])
        self.assertEqual(len(self.reporter.warnings), 1)

    @mock.patch('mcpreview.renderer.send2trash')
    def test_clear_directory(self, trash):
        open(os.path.join(self.directory, 'old.png'), 'w').close()
        clear_directory(self.directory, reporter=self.reporter)
        trash.assert_called_once_with(os.path.join(self.directory, 'old.png'))

    @mock.patch('mcpreview.renderer.send2trash', side_effect=OSError('busy'))
    def test_clear_directory_failure(self, trash):
        open(os.path.join(self.directory, 'old.png'), 'w').close()
        clear_directory(self.directory, reporter=self.reporter)
        self.assertEqual(len(self.reporter.warnings), 1)

    def test_clear_creates_directory(self):
        path = os.path.join(self.directory, 'images')
        clear_directory(path, reporter=self.reporter)
        self.assertTrue(os.path.isdir(path))


class TestRun(unittest.TestCase):
    def setUp(self) -> None:
        self.workspace = tempfile.mkdtemp()
        shutil.copytree(RP, os.path.join(self.workspace, 'packs', 'rp'))
        self.settings = Settings(
            resource_pack_path='packs/rp',
            render_directory=os.path.join(self.workspace, 'render'),
        )
        self.context = ActionContext(
            repository='owner/repo',
            pr_number=7,
            base_ref='main',
            head_ref='feature',
            workspace=self.workspace,
        )
        self.client = mock.MagicMock()
        self.renderer = FakeRenderer()
        self.checkout = mock.MagicMock()
        self.reporter = RecordingReporter()

    def tearDown(self) -> None:
        shutil.rmtree(self.workspace)

    def run_preview(self, changed_files, upload=fake_upload):
        self.client.list_pull_request_files.return_value = changed_files
        return run(
            self.settings,
            self.context,
            client=self.client,
            renderer=self.renderer,
            reporter=self.reporter,
            checkout_ref=self.checkout,
            upload=upload,
        )

    def test_full_run(self):
        rows = self.run_preview(['packs/rp/models/entity/zombie.geo.json', 'README.md'])

        self.assertEqual(rows, [ImageRow(
            'minecraft:zombie',
            'https://img/owner/repo/7/minecraft_zombie.base.png',
            'https://img/owner/repo/7/minecraft_zombie.head.png',
        )])
        self.assertEqual(self.checkout.call_args_list, [
            mock.call('main', cwd=self.workspace),
            mock.call('feature', cwd=self.workspace),
        ])
        self.assertEqual(sorted(self.renderer.rendered), ['minecraft_zombie.base', 'minecraft_zombie.head'])

        self.client.create_comment.assert_called_once()
        repository, number, body = self.client.create_comment.call_args.args
        self.assertEqual((repository, number), ('owner/repo', 7))
        self.assertIn('`minecraft:zombie`', body)

    def test_shared_geometry_file(self):
        rows = self.run_preview(['packs/rp/models/entity/creeper.geo.json'])
        self.assertEqual([row.identifier for row in rows], ['minecraft:creeper'])

    def test_no_affected_entities(self):
        rows = self.run_preview(['README.md', 'packs/rp/textures/entity/pig/other.png'])

        self.assertEqual(rows, [])
        self.checkout.assert_not_called()
        self.client.create_comment.assert_not_called()

    def test_paths_outside_pack_are_ignored(self):
        # Same relative path, but not inside the pack
        rows = self.run_preview(['models/entity/zombie.geo.json'])
        self.assertEqual(rows, [])

    def test_no_images(self):
        rows = self.run_preview(['packs/rp/models/entity/zombie.geo.json'], upload=lambda *args, **kwargs: {})

        self.assertEqual(rows, [])
        self.client.create_comment.assert_not_called()
        self.assertTrue(any('skipping the comment' in warning for warning in self.reporter.warnings))

    def test_head_restored_after_failure(self):
        self.checkout.side_effect = [GitError('base is gone'), None]
        with self.assertRaises(GitError):
            self.run_preview(['packs/rp/models/entity/zombie.geo.json'])
        self.assertEqual(self.checkout.call_args_list[-1], mock.call('feature', cwd=self.workspace))

    def test_pack_added_by_pull_request(self):
        packs = os.path.join(self.workspace, 'packs')
        moved = os.path.join(self.workspace, 'moved')

        def checkout_ref(ref, cwd=None):
            # The base commit predates the pack
            if ref == 'main':
                shutil.move(packs, moved)
            else:
                shutil.move(moved, packs)

        self.checkout.side_effect = checkout_ref
        rows = self.run_preview(['packs/rp/models/entity/zombie.geo.json'])

        self.assertEqual(rows, [ImageRow('minecraft:zombie', '', 'https://img/owner/repo/7/minecraft_zombie.head.png')])
        self.assertEqual(self.renderer.rendered, ['minecraft_zombie.head'])
        self.assertTrue(any('No resource pack on base' in warning for warning in self.reporter.warnings))
        self.client.create_comment.assert_called_once()

    def test_malformed_geometry_skips_entity(self):
        save_json(os.path.join(self.workspace, 'packs', 'rp', 'models', 'entity', 'zombie.geo.json'), {
            'minecraft:geometry': [{
                'description': {'identifier': 'geometry.zombie'},
                'bones': [{'name': 'body', 'cubes': [{'origin': [0, 0], 'size': [8, 12, 4]}]}],
            }]
        })
        rows = self.run_preview([
            'packs/rp/models/entity/zombie.geo.json',
            'packs/rp/models/entity/pig.geo.json',
        ])

        self.assertEqual([row.identifier for row in rows], ['minecraft:pig'])
        self.assertTrue(any('minecraft:zombie' in warning for warning in self.reporter.warnings))
        self.client.create_comment.assert_called_once()

    def test_missing_refs(self):
        self.context.base_ref = None
        with self.assertRaises(ConfigurationError):
            self.run_preview([])


## --- ##
## CLI ##
## --- ##
class TestCli(unittest.TestCase):
    def tearDown(self) -> None:
        set_reporter(LoggingReporter())
        configure_logging()

    @mock.patch('mcpreview.cli.run')
    def test_inputs_from_environment(self, run_preview):
        result = CliRunner().invoke(cli.main, [], env={
            'INPUT_GITHUB-TOKEN': 'secret',
            'INPUT_RESOURCE-PACK-PATH': 'packs/rp',
            'INPUT_RENDER-TIMEOUT': '30',
            'GITHUB_ACTIONS': 'true',
        })

        self.assertEqual(result.exit_code, 0, result.output)
        settings = run_preview.call_args.args[0]
        self.assertEqual(settings.github_token, 'secret')
        self.assertEqual(settings.resource_pack_path, 'packs/rp')
        self.assertEqual(settings.render_timeout, 30)
        self.assertIsInstance(run_preview.call_args.kwargs['reporter'], ActionsReporter)

    @mock.patch('mcpreview.cli.run', side_effect=GitHubError(401, 'Bad credentials'))
    def test_failure_exits_with_error(self, run_preview):
        result = CliRunner().invoke(cli.main, ['--github-token', 'wrong'], env={'GITHUB_ACTIONS': 'true'})

        self.assertEqual(result.exit_code, 1)
        self.assertIn('::error::', result.output)
        self.assertIn('Bad credentials', result.output)


if __name__ == '__main__':
    unittest.main()
