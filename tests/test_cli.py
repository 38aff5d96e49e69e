"""Tests for the CLI: noun dispatch and the stack/callback verbs."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli
from engine.cli import (
    EXIT_FAILED,
    EXIT_LOCKED,
    EXIT_SUCCESS,
    EXIT_TEMPLATE,
    EXIT_USAGE,
    callback_main,
    list_main,
    send_main,
    stack_main,
)
from engine.errors import ProviderError, StackLockedError


@pytest.fixture
def config_file(tmp_path):
    """stackops.yaml with file-backed providers so state survives between invocations."""
    path = tmp_path / 'stackops.yaml'
    path.write_text(yaml.safe_dump({
        'state_dir': str(tmp_path / 'state'),
        'native_timeout': 5,
        'providers': {'Local::File': {'kind': 'local-file', 'root': str(tmp_path / 'files')}},
    }))
    return path


def _template(tmp_path, resources, name='web.yaml', outputs=None):
    data = {'name': 'web', 'resources': resources}
    if outputs:
        data['outputs'] = outputs
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


def _file(logical_id, file_name, content='hello', **extra):
    entry = {'logicalId': logical_id, 'type': 'Local::File',
             'properties': {'FileName': file_name, 'Content': content}}
    entry.update(extra)
    return entry


def _run(config_file, capsys, *argv):
    rc = stack_main([*argv, '--config', str(config_file), '--json-output'])
    return rc, json.loads(capsys.readouterr().out)


class TestNounDispatch:
    """Tests for the top-level entry point."""

    def test_no_args_prints_usage(self, capsys):
        with patch.object(sys, 'argv', ['stackops']):
            assert cli.main() == 0
        assert 'Usage: stackops <noun> <action>' in capsys.readouterr().out

    def test_version(self, capsys):
        with patch.object(sys, 'argv', ['stackops', '--version']), \
                patch('cli.get_version', return_value='1.2.3'):
            assert cli.main() == 0
        assert capsys.readouterr().out.strip() == 'stackops 1.2.3'

    def test_unknown_command(self, capsys):
        with patch.object(sys, 'argv', ['stackops', 'vm']):
            assert cli.main() == 1
        assert "Unknown command 'vm'" in capsys.readouterr().out

    def test_dispatches_stack_noun(self):
        with patch.object(sys, 'argv', ['stackops', 'stack', 'status']), \
                patch('engine.cli.stack_main', return_value=0) as mock_main:
            assert cli.main() == 0
        mock_main.assert_called_once_with(['status'])

    def test_dispatches_callback_noun(self):
        with patch.object(sys, 'argv', ['stackops', 'callback', 'list', '--url', 'http://x']), \
                patch('engine.cli.callback_main', return_value=0) as mock_main:
            assert cli.main() == 0
        mock_main.assert_called_once_with(['list', '--url', 'http://x'])


class TestVerbDispatch:
    """Tests for stack_main/callback_main verb lookup."""

    def test_stack_without_verb(self, capsys):
        assert stack_main([]) == EXIT_USAGE
        assert 'plan' in capsys.readouterr().out

    def test_stack_help(self, capsys):
        assert stack_main(['--help']) == EXIT_SUCCESS

    def test_unknown_stack_verb(self, capsys):
        assert stack_main(['frobnicate']) == EXIT_USAGE
        assert "Unknown stack action 'frobnicate'" in capsys.readouterr().out

    def test_unknown_callback_verb(self, capsys):
        assert callback_main(['poke']) == EXIT_USAGE
        assert "Unknown callback action 'poke'" in capsys.readouterr().out


class TestStackLifecycle:
    """End-to-end verbs against a file-backed provider."""

    def test_plan_then_apply(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [_file('Conf', 'app.conf'), _file('Log', 'app.log', dependsOn=['Conf'])],
                             outputs={'ConfPath': {'Ref': 'Conf'}})

        rc, planned = _run(config_file, capsys, 'plan', '--stack', 'web', '--template', str(template))
        assert rc == EXIT_SUCCESS
        changeset_id = planned['changeset']['changeset_id']
        assert [c['logical_id'] for c in planned['changeset']['changes']] == ['Conf', 'Log']

        rc, applied = _run(config_file, capsys, 'apply', '--stack', 'web', '--changeset', changeset_id)

        assert rc == EXIT_SUCCESS
        assert applied['success'] is True
        assert applied['stack']['status'] == 'CREATE_COMPLETE'
        assert (tmp_path / 'files' / 'app.conf').read_text() == 'hello'
        assert applied['stack']['outputs']['ConfPath'] == str((tmp_path / 'files' / 'app.conf').resolve())

    def test_apply_changeset_twice_is_rejected(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [_file('Conf', 'app.conf')])
        _, planned = _run(config_file, capsys, 'plan', '--stack', 'web', '--template', str(template))
        changeset_id = planned['changeset']['changeset_id']
        _run(config_file, capsys, 'apply', '--stack', 'web', '--changeset', changeset_id)

        rc, output = _run(config_file, capsys, 'apply', '--stack', 'web', '--changeset', changeset_id)

        assert rc == EXIT_USAGE
        assert output['success'] is False
        assert output['error']['code'] == 'E303'

    def test_apply_template_directly(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [_file('Conf', 'app.conf')])

        rc = stack_main(['apply', '--stack', 'web', '--template', str(template), '--config', str(config_file)])

        assert rc == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert 'CREATE_COMPLETE' in out
        assert 'Finished in' in out

    def test_dry_run_executes_nothing(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [_file('Conf', 'app.conf')])

        rc, output = _run(config_file, capsys, 'apply', '--stack', 'web', '--template', str(template), '--dry-run')

        assert rc == EXIT_SUCCESS
        assert output['dry_run'] is True
        assert not (tmp_path / 'files' / 'app.conf').exists()

    def test_replacement_requires_confirmation(self, tmp_path, config_file, capsys):
        _run(config_file, capsys, 'apply', '--stack', 'web',
             '--template', str(_template(tmp_path, [_file('Conf', 'app.conf')])))
        renamed = _template(tmp_path, [_file('Conf', 'renamed.conf')], name='v2.yaml')

        with patch('engine.cli._confirm', return_value=False) as mock_confirm:
            rc = stack_main(['apply', '--stack', 'web', '--template', str(renamed), '--config', str(config_file)])

        assert rc == EXIT_USAGE
        mock_confirm.assert_called_once()
        out = capsys.readouterr().out
        assert 'Replace' in out
        assert 'Aborted.' in out
        assert (tmp_path / 'files' / 'app.conf').exists()

    def test_failed_apply_rolls_back(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [_file('Good', 'good.txt'), {
            'logicalId': 'Bad', 'type': 'Local::File', 'properties': {'FileName': '../escape.txt'},
            'dependsOn': ['Good'],
        }])

        rc, output = _run(config_file, capsys, 'apply', '--stack', 'web', '--template', str(template))

        assert rc == EXIT_FAILED
        assert output['success'] is False
        assert output['stack']['status'] == 'ROLLBACK_COMPLETE'
        assert not (tmp_path / 'files' / 'good.txt').exists()

    def test_template_error_exit_code(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [
            _file('A', 'a.txt', dependsOn=['B']),
            _file('B', 'b.txt', dependsOn=['A']),
        ])

        rc, output = _run(config_file, capsys, 'plan', '--stack', 'web', '--template', str(template))

        assert rc == EXIT_TEMPLATE
        assert output['error']['code'] == 'E103'

    def test_missing_template_source(self, config_file, capsys):
        rc, output = _run(config_file, capsys, 'plan', '--stack', 'web')
        assert rc == EXIT_TEMPLATE
        assert output['error']['code'] == 'E100'

    def test_locked_stack_exit_code(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [_file('Conf', 'app.conf')])
        engine = MagicMock()
        engine.plan.side_effect = StackLockedError('web', 'apply pid 4242')

        with patch('engine.cli.Engine.from_config', return_value=engine):
            rc, output = _run(config_file, capsys, 'plan', '--stack', 'web', '--template', str(template))

        assert rc == EXIT_LOCKED
        assert output['error']['code'] == 'E301'

    def test_status_lists_stacks(self, tmp_path, config_file, capsys):
        assert stack_main(['status', '--config', str(config_file)]) == EXIT_SUCCESS
        assert 'No stacks' in capsys.readouterr().out

        _run(config_file, capsys, 'apply', '--stack', 'web',
             '--template', str(_template(tmp_path, [_file('Conf', 'app.conf')])))
        rc = stack_main(['status', '--config', str(config_file), '--json-output'])

        assert rc == EXIT_SUCCESS
        assert json.loads(capsys.readouterr().out) == {
            'stacks': [{'stack_id': 'web', 'status': 'CREATE_COMPLETE', 'version': 1}],
        }

    def test_status_unknown_stack(self, config_file, capsys):
        rc, output = _run(config_file, capsys, 'status', '--stack', 'ghost')
        assert rc == EXIT_USAGE
        assert output['error']['code'] == 'E300'

    def test_drift_reports_out_of_band_edit(self, tmp_path, config_file, capsys):
        _run(config_file, capsys, 'apply', '--stack', 'web',
             '--template', str(_template(tmp_path, [_file('Conf', 'app.conf')])))
        (tmp_path / 'files' / 'app.conf').write_text('tampered')

        rc, output = _run(config_file, capsys, 'drift', '--stack', 'web')

        assert rc == EXIT_SUCCESS
        assert output['drifted'] is True
        (resource,) = output['resources']
        assert resource['status'] == 'MODIFIED'
        assert resource['differences']['Content'] == {'expected': 'hello', 'actual': 'tampered'}

    def test_destroy(self, tmp_path, config_file, capsys):
        _run(config_file, capsys, 'apply', '--stack', 'web',
             '--template', str(_template(tmp_path, [_file('Conf', 'app.conf')])))

        rc, output = _run(config_file, capsys, 'destroy', '--stack', 'web')

        assert rc == EXIT_SUCCESS
        assert output['stack']['status'] == 'DELETE_COMPLETE'
        assert not (tmp_path / 'files' / 'app.conf').exists()

    def test_destroy_aborted(self, tmp_path, config_file, capsys):
        _run(config_file, capsys, 'apply', '--stack', 'web',
             '--template', str(_template(tmp_path, [_file('Conf', 'app.conf')])))

        with patch('engine.cli._confirm', return_value=False):
            rc = stack_main(['destroy', '--stack', 'web', '--config', str(config_file)])

        assert rc == EXIT_USAGE
        assert (tmp_path / 'files' / 'app.conf').exists()

    def test_recover_settled_stack_is_noop(self, tmp_path, config_file, capsys):
        _run(config_file, capsys, 'apply', '--stack', 'web',
             '--template', str(_template(tmp_path, [_file('Conf', 'app.conf')])))

        rc, output = _run(config_file, capsys, 'recover', '--stack', 'web')

        assert rc == EXIT_SUCCESS
        assert output['stack']['status'] == 'CREATE_COMPLETE'

    def test_discard(self, tmp_path, config_file, capsys):
        template = _template(tmp_path, [_file('Conf', 'app.conf')])
        _, planned = _run(config_file, capsys, 'plan', '--stack', 'web', '--template', str(template))
        changeset_id = planned['changeset']['changeset_id']

        rc, output = _run(config_file, capsys, 'discard', '--stack', 'web', '--changeset', changeset_id)
        assert rc == EXIT_SUCCESS
        assert output == {'changeset_id': changeset_id, 'status': 'DISCARDED'}

        rc, output = _run(config_file, capsys, 'apply', '--stack', 'web', '--changeset', changeset_id)
        assert rc == EXIT_USAGE
        assert output['error']['code'] == 'E303'


class TestCallbackVerbs:
    """Tests for callback send/list with HTTP mocked."""

    def test_send_accepted(self, capsys):
        with patch('engine.cli.send_callback', return_value=(202, {'status': 'accepted'})) as mock_send:
            rc = send_main(['--url', 'http://engine/callback', '--request-id', 'req-1',
                            '--token', 'tok', '--status', 'SUCCESS', '--physical-id', 'db-1',
                            '--output', 'Endpoint=db.example:5432'])

        assert rc == EXIT_SUCCESS
        mock_send.assert_called_once_with(
            'http://engine/callback', 'req-1', 'tok', 'SUCCESS',
            physical_id='db-1', output_data={'Endpoint': 'db.example:5432'},
            reason=None, verify=True,
        )
        assert json.loads(capsys.readouterr().out) == {'status': 'accepted'}

    def test_send_rejected(self, capsys):
        with patch('engine.cli.send_callback', return_value=(409, {'error': {'code': 'E323'}})):
            rc = send_main(['--url', 'http://engine/callback', '--request-id', 'req-1',
                            '--token', 'tok', '--status', 'FAILED', '--reason', 'quota'])
        assert rc == EXIT_FAILED

    def test_send_bad_output(self, capsys):
        rc = send_main(['--url', 'http://e', '--request-id', 'r', '--token', 't',
                        '--status', 'SUCCESS', '--output', 'novalue'])
        assert rc == EXIT_USAGE
        assert 'KEY=VALUE' in capsys.readouterr().err

    def test_send_unreachable(self, capsys):
        with patch('engine.cli.send_callback', side_effect=ProviderError('connection refused')):
            rc = send_main(['--url', 'http://e', '--request-id', 'r', '--token', 't', '--status', 'SUCCESS'])
        assert rc == EXIT_USAGE

    def test_list(self, capsys):
        resp = MagicMock(status_code=200)
        resp.json.return_value = {'pending': [], 'count': 0}

        with patch('engine.cli.requests.get', return_value=resp) as mock_get:
            rc = list_main(['--url', 'https://engine:44480/', '--admin-token', 'adm'])

        assert rc == EXIT_SUCCESS
        mock_get.assert_called_once_with(
            'https://engine:44480/callbacks', headers={'Authorization': 'Bearer adm'},
            timeout=10, verify=True,
        )
        assert json.loads(capsys.readouterr().out)['count'] == 0

    def test_list_unreachable(self, capsys):
        with patch('engine.cli.requests.get', side_effect=requests.exceptions.ConnectionError('refused')):
            rc = list_main(['--url', 'http://engine:1'])
        assert rc == EXIT_USAGE
        assert 'cannot reach' in capsys.readouterr().err
