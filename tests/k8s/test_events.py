import logging

from capifleet._cogs.clients.events import MAX_MESSAGE_LENGTH, post_event, shorten_message
from capifleet._cogs.structs.references import EVENTS

logger = logging.getLogger(__name__)


async def test_posting_for_a_namespaced_object(kubeapi, settings):
    route = kubeapi.add('post', EVENTS.get_url(namespace='ns'), {})
    ref = {'apiVersion': 'fleet.cattle.io/v1alpha1', 'kind': 'Cluster', 'name': 'c1',
           'namespace': 'ns', 'uid': 'uid1'}

    await post_event(ref=ref, type='Normal', reason='Created', action='Creating',
                     message='hello', settings=settings, logger=logger)

    data = route.data
    assert data['metadata'] == {'namespace': 'ns', 'generateName': 'caapf-event-'}
    assert data['type'] == 'Normal'
    assert data['reason'] == 'Created'
    assert data['action'] == 'Creating'
    assert data['message'] == 'hello'
    assert data['reportingComponent'] == 'caapf-controller'
    assert data['source'] == {'component': 'caapf-controller'}
    assert data['involvedObject'] == ref
    assert data['eventTime'] == data['firstTimestamp'] == data['lastTimestamp']


async def test_posting_for_a_cluster_scoped_object_goes_to_the_default_namespace(kubeapi, settings):
    route = kubeapi.add('post', EVENTS.get_url(namespace='default'), {})
    ref = {'apiVersion': 'v1', 'kind': 'Namespace', 'name': 'ns1'}

    await post_event(ref=ref, type='Normal', reason='R', action='A',
                     settings=settings, logger=logger)

    assert route.data['involvedObject'] == dict(ref, namespace='default')


def test_short_messages_are_kept():
    assert shorten_message('hello') == 'hello'


def test_long_messages_are_cut_in_the_middle():
    message = 'a' * MAX_MESSAGE_LENGTH + 'b' * MAX_MESSAGE_LENGTH
    shortened = shorten_message(message)
    assert len(shortened) == MAX_MESSAGE_LENGTH
    assert shortened.startswith('aaa')
    assert shortened.endswith('bbb')
    assert '...' in shortened
