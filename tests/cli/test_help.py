def test_help_in_root(invoke):
    result = invoke(['--help'])
    assert result.exit_code == 0
    assert 'Usage: capifleet [OPTIONS] COMMAND [ARGS]...' in result.output
    assert '  run ' in result.output


def test_help_in_run(invoke, real_run):
    result = invoke(['run', '--help'])
    assert result.exit_code == 0
    assert not real_run.called
    assert 'Usage: capifleet run [OPTIONS]' in result.output
    assert ' --server-endpoint ' in result.output
    assert ' --config-name ' in result.output
    assert ' --fleet-namespace ' in result.output
    assert ' --log-format ' in result.output


def test_version(invoke):
    result = invoke(['--version'])
    assert result.exit_code == 0
    assert result.output.startswith('capifleet, version ')
