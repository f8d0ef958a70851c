import json

import pytest

from stackpilot.engine.errors import TemplateError
from stackpilot.engine.expressions import (
    AttributeRef,
    GetAZs,
    Join,
    ListOf,
    Literal,
    MapLookup,
    MapOf,
    ParameterRef,
    PseudoRef,
    Select,
    Split,
)
from stackpilot.engine.template import load_template, parse_template


@pytest.fixture
def service_consumer(load_template_file):
    return load_template(load_template_file("service-consumer.yaml"))


def resource(template, logical_id):
    return next(r for r in template.resources if r.logical_id == logical_id)


class TestServiceConsumerTemplate:
    def test_sections(self, service_consumer):
        assert len(service_consumer.resources) == 16
        assert service_consumer.resources[0].logical_id == "ServiceConsumerVPC"
        assert list(service_consumer.parameters) == [
            "ProjectName",
            "VpcCIDR",
            "PublicSubnet1CIDR",
            "PublicSubnet2CIDR",
            "InstanceType",
            "EndpointServiceId",
            "PrivateDomainName",
        ]
        assert service_consumer.mappings["RegionMap"]["us-west-2"]["AMI"] == "ami-0d081196e3df05f4d"
        assert [output.name for output in service_consumer.outputs] == [
            "InterfaceEndpointId",
            "InterfaceEndpointDnsName",
            "PrivateDomainName",
        ]
        assert service_consumer.description.startswith("This template deploys")

    def test_parameters(self, service_consumer):
        instance_type = service_consumer.parameters["InstanceType"]
        assert instance_type.default == "t2.micro"
        assert "t2.large" in instance_type.allowed_values
        assert instance_type.constraint_description == "Must be a valid EC2 instance type."
        assert service_consumer.parameters["EndpointServiceId"].default is None

    def test_refs(self, service_consumer):
        vpc = resource(service_consumer, "ServiceConsumerVPC")
        assert vpc.type == "AWS::EC2::VPC"
        assert vpc.properties["CidrBlock"] == ParameterRef("VpcCIDR")
        assert vpc.properties["EnableDnsSupport"] == Literal(True)

        attachment = resource(service_consumer, "InternetGatewayAttachment")
        assert attachment.properties["VpcId"] == AttributeRef("ServiceConsumerVPC")
        assert attachment.properties["InternetGatewayId"] == AttributeRef("InternetGateway")

    def test_sub_is_desugared_into_join(self, service_consumer):
        vpc = resource(service_consumer, "ServiceConsumerVPC")
        tag = vpc.properties["Tags"].items[0]
        assert tag.get("Key") == Literal("Name")
        assert tag.get("Value") == Join("", ListOf((ParameterRef("ProjectName"), Literal("-VPC"))))

        endpoint = resource(service_consumer, "InterfaceEndpoint")
        assert endpoint.properties["ServiceName"] == Join(
            "",
            ListOf(
                (
                    Literal("com.amazonaws.vpce."),
                    PseudoRef("region"),
                    Literal("."),
                    ParameterRef("EndpointServiceId"),
                )
            ),
        )

    def test_get_azs(self, service_consumer):
        subnet = resource(service_consumer, "PublicSubnet2")
        assert subnet.properties["AvailabilityZone"] == Select(Literal(1), GetAZs(Literal("")))

    def test_find_in_map(self, service_consumer):
        instance = resource(service_consumer, "ConsumerEC2Instance1")
        assert instance.properties["ImageId"] == MapLookup(
            Literal("RegionMap"), PseudoRef("region"), Literal("AMI")
        )
        assert instance.properties["SecurityGroupIds"] == ListOf((AttributeRef("EC2SecurityGroup"),))

    def test_nested_functions(self, service_consumer):
        record_set = resource(service_consumer, "PrivateRecordSet")
        alias_target = record_set.properties["AliasTarget"]
        assert isinstance(alias_target, MapOf)
        assert alias_target.get("DNSName") == Select(
            Literal("1"),
            Split(":", Select(Literal("0"), AttributeRef("InterfaceEndpoint", "DnsEntries"))),
        )
        assert alias_target.get("EvaluateTargetHealth") == Literal(True)

    def test_outputs(self, service_consumer):
        outputs = {output.name: output for output in service_consumer.outputs}
        assert outputs["InterfaceEndpointId"].value == AttributeRef("InterfaceEndpoint")
        assert outputs["InterfaceEndpointId"].description == "The ID of the interface endpoint"
        assert outputs["PrivateDomainName"].value == Join(
            "", ListOf((Literal("http://"), ParameterRef("PrivateDomainName")))
        )


class TestParsing:
    def test_json_template(self):
        body = json.dumps(
            {
                "Resources": {
                    "Vpc": {"Type": "AWS::EC2::VPC", "Properties": {"CidrBlock": "10.0.0.0/16"}},
                    "Subnet": {
                        "Type": "AWS::EC2::Subnet",
                        "DependsOn": "Vpc",
                        "Properties": {"VpcId": {"Fn::GetAtt": ["Vpc", "VpcId"]}},
                    },
                }
            }
        )
        template = load_template(body)
        subnet = resource(template, "Subnet")
        assert subnet.depends_on == ["Vpc"]
        assert subnet.properties["VpcId"] == AttributeRef("Vpc", "VpcId")

    def test_dates_are_kept_as_strings(self):
        parsed = parse_template("AWSTemplateFormatVersion: 2010-09-09\nResources: {}\n")
        assert parsed["AWSTemplateFormatVersion"] == "2010-09-09"

    def test_short_form_tags(self):
        parsed = parse_template(
            "Resources:\n"
            "  Zone:\n"
            "    Type: AWS::Route53::HostedZone\n"
            "    Properties:\n"
            "      Name: !Ref DomainName\n"
            "      Comment: !GetAtt Vpc.CidrBlock\n"
        )
        properties = parsed["Resources"]["Zone"]["Properties"]
        assert properties["Name"] == {"Ref": "DomainName"}
        assert properties["Comment"] == {"Fn::GetAtt": ["Vpc", "CidrBlock"]}

    def test_sub_variants(self):
        template = load_template(
            {
                "Parameters": {"Domain": {"Type": "String", "Default": "myservice.local"}},
                "Resources": {
                    "Vpc": {"Type": "network", "Properties": {"CidrBlock": "10.0.0.0/16"}},
                    "Zone": {
                        "Type": "dns-zone",
                        "Properties": {
                            "Name": {"Fn::Sub": "${Domain}"},
                            "Comment": {"Fn::Sub": "${Vpc} ${Vpc.CidrBlock} ${!Literal} ${AWS::AccountId}"},
                            "Url": {"Fn::Sub": ["http://${Host}", {"Host": {"Ref": "Domain"}}]},
                            "Plain": {"Fn::Sub": "no placeholders"},
                        },
                    },
                },
            }
        )
        zone = resource(template, "Zone")
        assert zone.properties["Name"] == Join("", ListOf((ParameterRef("Domain"),)))
        assert zone.properties["Comment"] == Join(
            "",
            ListOf(
                (
                    AttributeRef("Vpc"),
                    Literal(" "),
                    AttributeRef("Vpc", "CidrBlock"),
                    Literal(" "),
                    Literal("${Literal}"),
                    Literal(" "),
                    PseudoRef("accountId"),
                )
            ),
        )
        assert zone.properties["Url"] == Join(
            "", ListOf((Literal("http://"), ParameterRef("Domain")))
        )
        assert zone.properties["Plain"] == Literal("no placeholders")

    def test_missing_resources(self):
        with pytest.raises(TemplateError):
            load_template("Parameters: {}\n")

    def test_resource_without_type(self):
        with pytest.raises(TemplateError) as e:
            load_template({"Resources": {"Vpc": {"Properties": {}}}})
        e.match("Resource Vpc has no Type")

    def test_unsupported_intrinsic_function(self):
        with pytest.raises(TemplateError) as e:
            load_template(
                "Resources:\n"
                "  Vpc:\n"
                "    Type: AWS::EC2::VPC\n"
                "    Properties:\n"
                "      CidrBlock: !ImportValue SharedCidr\n"
            )
        e.match("Fn::ImportValue")

    def test_conditions_are_rejected(self):
        with pytest.raises(TemplateError):
            load_template(
                {
                    "Resources": {
                        "Vpc": {"Type": "network", "Properties": {"CidrBlock": {"Condition": "IsProd"}}}
                    }
                }
            )

    def test_invalid_arguments(self):
        with pytest.raises(TemplateError) as e:
            load_template(
                {"Resources": {"Vpc": {"Type": "network", "Properties": {"Name": {"Fn::Select": [0]}}}}}
            )
        e.match("Fn::Select expects a list of 2 arguments")

    def test_invalid_yaml(self):
        with pytest.raises(TemplateError):
            parse_template("Resources: [unclosed\n")

    def test_not_an_object(self):
        with pytest.raises(TemplateError):
            parse_template("- just\n- a list\n")

    def test_output_without_value(self):
        with pytest.raises(TemplateError) as e:
            load_template(
                {
                    "Resources": {"Vpc": {"Type": "network"}},
                    "Outputs": {"VpcId": {"Description": "no value"}},
                }
            )
        e.match("Output VpcId has no Value")
