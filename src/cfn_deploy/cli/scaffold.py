"""Starter project written by ``cfn-deploy init``.

Four stages deployed in order: network, container cluster, ECS service and the
CI/CD pipeline. Stacks pass values to each other through exports named
``<stack>-<OutputKey>``; consumers take the producer's stack name as a
``*StackName`` parameter.
"""

from typing import Dict

CONFIG_TEMPLATE = """# cfn-deploy configuration
project:
  name: {name}
  region: {region}
  tags:
    team: platform

stages:
  - name: network
    template: templates/network.yaml
    description: VPC, public subnets and routing

  - name: container
    template: templates/container.yaml
    description: ECS cluster, image repository and task execution role
    capabilities:
      - CAPABILITY_IAM

  - name: service
    template: templates/service.yaml
    description: Load balanced Fargate service
    parameters:
      ServiceName: app

  - name: pipeline
    template: templates/pipeline.yaml
    description: Source, build and deploy pipeline
    capabilities:
      - CAPABILITY_IAM
    parameters:
      RepositoryId: my-org/my-app
      BranchName: main
      ConnectionArn: arn:aws:codestar-connections:{region}:{account}:connection/replace-me

environments:
  dev:
    account: "{account}"
    region: {region}

teardown:
  - pipeline
  - service
  - container
  - network
"""

NETWORK_TEMPLATE = """AWSTemplateFormatVersion: "2010-09-09"
Description: VPC with two public subnets

Parameters:
  VpcCidr:
    Type: String
    Default: 10.0.0.0/16
  SubnetOneCidr:
    Type: String
    Default: 10.0.0.0/24
  SubnetTwoCidr:
    Type: String
    Default: 10.0.1.0/24

Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: !Ref VpcCidr
      EnableDnsSupport: true
      EnableDnsHostnames: true

  InternetGateway:
    Type: AWS::EC2::InternetGateway

  GatewayAttachment:
    Type: AWS::EC2::VPCGatewayAttachment
    Properties:
      VpcId: !Ref Vpc
      InternetGatewayId: !Ref InternetGateway

  PublicSubnetOne:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !Ref Vpc
      CidrBlock: !Ref SubnetOneCidr
      AvailabilityZone: !Select [0, !GetAZs ""]
      MapPublicIpOnLaunch: true

  PublicSubnetTwo:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !Ref Vpc
      CidrBlock: !Ref SubnetTwoCidr
      AvailabilityZone: !Select [1, !GetAZs ""]
      MapPublicIpOnLaunch: true

  PublicRouteTable:
    Type: AWS::EC2::RouteTable
    Properties:
      VpcId: !Ref Vpc

  PublicRoute:
    Type: AWS::EC2::Route
    DependsOn: GatewayAttachment
    Properties:
      RouteTableId: !Ref PublicRouteTable
      DestinationCidrBlock: 0.0.0.0/0
      GatewayId: !Ref InternetGateway

  SubnetOneRouteTableAssociation:
    Type: AWS::EC2::SubnetRouteTableAssociation
    Properties:
      SubnetId: !Ref PublicSubnetOne
      RouteTableId: !Ref PublicRouteTable

  SubnetTwoRouteTableAssociation:
    Type: AWS::EC2::SubnetRouteTableAssociation
    Properties:
      SubnetId: !Ref PublicSubnetTwo
      RouteTableId: !Ref PublicRouteTable

Outputs:
  VpcId:
    Value: !Ref Vpc
    Export:
      Name: !Sub "${AWS::StackName}-VpcId"
  PublicSubnetOne:
    Value: !Ref PublicSubnetOne
    Export:
      Name: !Sub "${AWS::StackName}-PublicSubnetOne"
  PublicSubnetTwo:
    Value: !Ref PublicSubnetTwo
    Export:
      Name: !Sub "${AWS::StackName}-PublicSubnetTwo"
"""

CONTAINER_TEMPLATE = """AWSTemplateFormatVersion: "2010-09-09"
Description: ECS cluster, image repository and task execution role

Parameters:
  NetworkStackName:
    Type: String
    Default: network

Resources:
  Cluster:
    Type: AWS::ECS::Cluster

  Repository:
    Type: AWS::ECR::Repository

  ContainerSecurityGroup:
    Type: AWS::EC2::SecurityGroup
    Properties:
      GroupDescription: Access to the Fargate containers
      VpcId: !ImportValue
        Fn::Sub: "${NetworkStackName}-VpcId"

  ExecutionRole:
    Type: AWS::IAM::Role
    Properties:
      AssumeRolePolicyDocument:
        Statement:
          - Effect: Allow
            Principal:
              Service: ecs-tasks.amazonaws.com
            Action: sts:AssumeRole
      ManagedPolicyArns:
        - arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy

Outputs:
  ClusterName:
    Value: !Ref Cluster
    Export:
      Name: !Sub "${AWS::StackName}-ClusterName"
  RepositoryUri:
    Value: !GetAtt Repository.RepositoryUri
    Export:
      Name: !Sub "${AWS::StackName}-RepositoryUri"
  ContainerSecurityGroup:
    Value: !Ref ContainerSecurityGroup
    Export:
      Name: !Sub "${AWS::StackName}-ContainerSecurityGroup"
  ExecutionRoleArn:
    Value: !GetAtt ExecutionRole.Arn
    Export:
      Name: !Sub "${AWS::StackName}-ExecutionRoleArn"
"""

SERVICE_TEMPLATE = """AWSTemplateFormatVersion: "2010-09-09"
Description: Load balanced Fargate service

Parameters:
  NetworkStackName:
    Type: String
    Default: network
  ContainerStackName:
    Type: String
    Default: container
  ServiceName:
    Type: String
  ImageUrl:
    Type: String
    Default: public.ecr.aws/nginx/nginx:latest
  ContainerPort:
    Type: Number
    Default: 80
  DesiredCount:
    Type: Number
    Default: 1

Resources:
  LoadBalancerSecurityGroup:
    Type: AWS::EC2::SecurityGroup
    Properties:
      GroupDescription: Public access to the load balancer
      VpcId: !ImportValue
        Fn::Sub: "${NetworkStackName}-VpcId"
      SecurityGroupIngress:
        - CidrIp: 0.0.0.0/0
          IpProtocol: tcp
          FromPort: 80
          ToPort: 80

  ContainerIngress:
    Type: AWS::EC2::SecurityGroupIngress
    Properties:
      GroupId: !ImportValue
        Fn::Sub: "${ContainerStackName}-ContainerSecurityGroup"
      IpProtocol: tcp
      FromPort: !Ref ContainerPort
      ToPort: !Ref ContainerPort
      SourceSecurityGroupId: !Ref LoadBalancerSecurityGroup

  LoadBalancer:
    Type: AWS::ElasticLoadBalancingV2::LoadBalancer
    Properties:
      Scheme: internet-facing
      SecurityGroups:
        - !Ref LoadBalancerSecurityGroup
      Subnets:
        - !ImportValue
          Fn::Sub: "${NetworkStackName}-PublicSubnetOne"
        - !ImportValue
          Fn::Sub: "${NetworkStackName}-PublicSubnetTwo"

  TargetGroup:
    Type: AWS::ElasticLoadBalancingV2::TargetGroup
    Properties:
      Port: !Ref ContainerPort
      Protocol: HTTP
      TargetType: ip
      HealthCheckPath: /
      VpcId: !ImportValue
        Fn::Sub: "${NetworkStackName}-VpcId"

  Listener:
    Type: AWS::ElasticLoadBalancingV2::Listener
    Properties:
      LoadBalancerArn: !Ref LoadBalancer
      Port: 80
      Protocol: HTTP
      DefaultActions:
        - Type: forward
          TargetGroupArn: !Ref TargetGroup

  TaskDefinition:
    Type: AWS::ECS::TaskDefinition
    Properties:
      Family: !Ref ServiceName
      Cpu: "256"
      Memory: "512"
      NetworkMode: awsvpc
      RequiresCompatibilities:
        - FARGATE
      ExecutionRoleArn: !ImportValue
        Fn::Sub: "${ContainerStackName}-ExecutionRoleArn"
      ContainerDefinitions:
        - Name: !Ref ServiceName
          Image: !Ref ImageUrl
          PortMappings:
            - ContainerPort: !Ref ContainerPort

  Service:
    Type: AWS::ECS::Service
    DependsOn: Listener
    Properties:
      ServiceName: !Ref ServiceName
      Cluster: !ImportValue
        Fn::Sub: "${ContainerStackName}-ClusterName"
      LaunchType: FARGATE
      DesiredCount: !Ref DesiredCount
      TaskDefinition: !Ref TaskDefinition
      NetworkConfiguration:
        AwsvpcConfiguration:
          AssignPublicIp: ENABLED
          SecurityGroups:
            - !ImportValue
              Fn::Sub: "${ContainerStackName}-ContainerSecurityGroup"
          Subnets:
            - !ImportValue
              Fn::Sub: "${NetworkStackName}-PublicSubnetOne"
            - !ImportValue
              Fn::Sub: "${NetworkStackName}-PublicSubnetTwo"
      LoadBalancers:
        - ContainerName: !Ref ServiceName
          ContainerPort: !Ref ContainerPort
          TargetGroupArn: !Ref TargetGroup

Outputs:
  ServiceName:
    Value: !GetAtt Service.Name
    Export:
      Name: !Sub "${AWS::StackName}-ServiceName"
  ServiceUrl:
    Value: !Sub "http://${LoadBalancer.DNSName}"
"""

PIPELINE_TEMPLATE = """AWSTemplateFormatVersion: "2010-09-09"
Description: Source, build and deploy pipeline for the container service

Parameters:
  ContainerStackName:
    Type: String
    Default: container
  ServiceStackName:
    Type: String
    Default: service
  RepositoryId:
    Type: String
  BranchName:
    Type: String
    Default: main
  ConnectionArn:
    Type: String

Resources:
  ArtifactBucket:
    Type: AWS::S3::Bucket

  BuildRole:
    Type: AWS::IAM::Role
    Properties:
      AssumeRolePolicyDocument:
        Statement:
          - Effect: Allow
            Principal:
              Service: codebuild.amazonaws.com
            Action: sts:AssumeRole
      ManagedPolicyArns:
        - arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryPowerUser
        - arn:aws:iam::aws:policy/CloudWatchLogsFullAccess
        - arn:aws:iam::aws:policy/AmazonS3FullAccess

  PipelineRole:
    Type: AWS::IAM::Role
    Properties:
      AssumeRolePolicyDocument:
        Statement:
          - Effect: Allow
            Principal:
              Service: codepipeline.amazonaws.com
            Action: sts:AssumeRole
      ManagedPolicyArns:
        - arn:aws:iam::aws:policy/AWSCodePipeline_FullAccess
        - arn:aws:iam::aws:policy/AWSCodeBuildDeveloperAccess
        - arn:aws:iam::aws:policy/AmazonECS_FullAccess
        - arn:aws:iam::aws:policy/AmazonS3FullAccess
      Policies:
        - PolicyName: source-connection
          PolicyDocument:
            Statement:
              - Effect: Allow
                Action:
                  - codestar-connections:UseConnection
                  - iam:PassRole
                Resource: "*"

  BuildProject:
    Type: AWS::CodeBuild::Project
    Properties:
      ServiceRole: !GetAtt BuildRole.Arn
      Artifacts:
        Type: CODEPIPELINE
      Source:
        Type: CODEPIPELINE
        BuildSpec: buildspec.yml
      Environment:
        ComputeType: BUILD_GENERAL1_SMALL
        Image: aws/codebuild/standard:7.0
        Type: LINUX_CONTAINER
        PrivilegedMode: true
        EnvironmentVariables:
          - Name: REPOSITORY_URI
            Value: !ImportValue
              Fn::Sub: "${ContainerStackName}-RepositoryUri"

  Pipeline:
    Type: AWS::CodePipeline::Pipeline
    Properties:
      RoleArn: !GetAtt PipelineRole.Arn
      ArtifactStore:
        Type: S3
        Location: !Ref ArtifactBucket
      Stages:
        - Name: Source
          Actions:
            - Name: Source
              ActionTypeId:
                Category: Source
                Owner: AWS
                Provider: CodeStarSourceConnection
                Version: "1"
              Configuration:
                ConnectionArn: !Ref ConnectionArn
                FullRepositoryId: !Ref RepositoryId
                BranchName: !Ref BranchName
              OutputArtifacts:
                - Name: SourceOutput
        - Name: Build
          Actions:
            - Name: Build
              ActionTypeId:
                Category: Build
                Owner: AWS
                Provider: CodeBuild
                Version: "1"
              Configuration:
                ProjectName: !Ref BuildProject
              InputArtifacts:
                - Name: SourceOutput
              OutputArtifacts:
                - Name: BuildOutput
        - Name: Deploy
          Actions:
            - Name: Deploy
              ActionTypeId:
                Category: Deploy
                Owner: AWS
                Provider: ECS
                Version: "1"
              Configuration:
                ClusterName: !ImportValue
                  Fn::Sub: "${ContainerStackName}-ClusterName"
                ServiceName: !ImportValue
                  Fn::Sub: "${ServiceStackName}-ServiceName"
                FileName: imagedefinitions.json
              InputArtifacts:
                - Name: BuildOutput

Outputs:
  PipelineName:
    Value: !Ref Pipeline
"""

TEMPLATES: Dict[str, str] = {
    "network.yaml": NETWORK_TEMPLATE,
    "container.yaml": CONTAINER_TEMPLATE,
    "service.yaml": SERVICE_TEMPLATE,
    "pipeline.yaml": PIPELINE_TEMPLATE,
}

GITIGNORE_ENTRY = "\n# cfn-deploy state and logs\n.cfn-deploy/\n"


def render_config(name: str, region: str, account: str) -> str:
    return CONFIG_TEMPLATE.format(name=name, region=region, account=account)
